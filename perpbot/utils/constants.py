"""Shared constants for signal parsing and order handling."""

# Signal verbs
OPEN_VERBS = {"buy": "long", "long": "long", "sell": "short", "short": "short"}
CLOSE_VERBS = {"close", "exit", "flatten", "close_all"}

# Size fields accepted from TradingView templates, in precedence order
SIZE_FIELDS = ("contracts", "position_size")

# Keys never stored or hashed
SECRET_FIELDS = {"secret", "passphrase", "webhook_secret"}

# Symbol decoration stripped before market lookup, longest first
SYMBOL_SUFFIXES = ("PERP", "USDT", "USDC", "USD")
SYMBOL_SEPARATORS = ("-", "_", "/")

SIDE_RESTRICTIONS = {"long", "short", "both"}

# Lighter perpetuals settle in USDC
COLLATERAL_ASSET = "USDC"
