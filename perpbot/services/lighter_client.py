"""Lighter DEX client wrapper for order placement and account management.

Wraps the lighter-sdk async API for a single venue account (a bot's
sub-account, or the master account when funding sub-accounts).
"""

import logging
import time
from dataclasses import dataclass, field

import lighter

logger = logging.getLogger(__name__)

CROSS_MARGIN_MODE = 0
USDC_DECIMALS = 6
ORDER_TYPE_LIMIT = 0
TIME_IN_FORCE_GTT = 1
# Lighter expects a 32-byte memo on transfers
EMPTY_MEMO = "0x" + "00" * 32


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    filled_price: float | None = None
    filled_amount: float | None = None
    order_status: str | None = None
    raw_response: str | None = None


@dataclass
class AccountState:
    """Account snapshot in float units; ``positions`` maps market_index to signed size."""

    account_index: int
    equity: float = 0.0
    available: float = 0.0
    positions: dict[int, float] = field(default_factory=dict)
    entry_prices: dict[int, float] = field(default_factory=dict)


def _tx_hash(resp) -> str | None:
    tx_hash = getattr(resp, "tx_hash", None)
    return str(tx_hash) if tx_hash else None


class LighterClient:
    """Wrapper around the Lighter SDK for trading operations."""

    def __init__(
        self,
        host: str,
        private_key: str,
        api_key_index: int,
        account_index: int,
    ):
        self.host = host
        self.private_key = private_key
        self.api_key_index = api_key_index
        self.account_index = account_index
        self._api_client = None
        self._signer_client = None
        self._market_meta: dict[int, dict] = {}  # market_index → {price_decimals, size_decimals}

    async def _ensure_clients(self):
        """Lazily initialize Lighter SDK clients."""
        if self._api_client is not None:
            return

        try:
            config = lighter.Configuration(host=self.host)
            self._api_client = lighter.ApiClient(configuration=config)
            self._signer_client = lighter.SignerClient(
                url=self.host,
                account_index=self.account_index,
                api_private_keys={self.api_key_index: self.private_key},
            )
            logger.info(f"Lighter SDK clients initialized for account {self.account_index}")
        except Exception as e:
            logger.error(f"Failed to initialize Lighter clients: {e}")
            raise

    async def _get_market_meta(self, market_index: int) -> dict:
        """Fetch and cache price/size decimal info for a market."""
        if market_index in self._market_meta:
            return self._market_meta[market_index]

        order_api = lighter.OrderApi(self._api_client)
        resp = await order_api.order_book_details(market_id=market_index)
        for book in resp.order_book_details or []:
            if book.market_id == market_index:
                meta = {
                    "price_decimals": int(book.supported_price_decimals),
                    "size_decimals": int(book.supported_size_decimals),
                }
                self._market_meta[market_index] = meta
                logger.info(f"Market {market_index} meta: {meta}")
                return meta
        raise ValueError(f"Could not find market metadata for market_index={market_index}")

    async def _get_account(self, by: str, value: str):
        account_api = lighter.AccountApi(self._api_client)
        resp = await account_api.account(by=by, value=value)
        # Unwrap DetailedAccounts → DetailedAccount
        if hasattr(resp, "accounts") and resp.accounts:
            return resp.accounts[0]
        return resp

    async def test_connection(self) -> dict:
        """Test connectivity to Lighter."""
        await self._ensure_clients()
        try:
            account = await self._get_account("index", str(self.account_index))
            return {"status": "ok", "account": str(getattr(account, "index", self.account_index))}
        except Exception as e:
            return {"status": "error", "message": str(e)}

    async def place_order(
        self,
        market_index: int,
        base_amount: float,
        price: float,
        is_ask: bool,
        reduce_only: bool = False,
        client_order_index: int | None = None,
        market: bool = True,
    ) -> OrderResult:
        """Place an order on Lighter.

        Args:
            market_index: Lighter market index.
            base_amount: Quantity in asset units.
            price: Limit price, or worst acceptable price for market orders.
            is_ask: True for sell, False for buy.
            reduce_only: Only shrink an existing position.
            client_order_index: Unique order reference. Auto-generated if None.
            market: If True, use IOC market order; otherwise a GTT limit order.
        """
        await self._ensure_clients()

        if client_order_index is None:
            client_order_index = int(time.time() * 1000) % (2**31)

        try:
            meta = await self._get_market_meta(market_index)
            price_int = int(round(price * 10 ** meta["price_decimals"]))
            amount_int = int(round(base_amount * 10 ** meta["size_decimals"]))
            logger.debug(
                f"Order encode: price={price} → {price_int} ({meta['price_decimals']}dp), "
                f"amount={base_amount} → {amount_int} ({meta['size_decimals']}dp)"
            )

            if market:
                order, resp, error = await self._signer_client.create_market_order(
                    market_index=market_index,
                    client_order_index=client_order_index,
                    base_amount=amount_int,
                    avg_execution_price=price_int,
                    is_ask=is_ask,
                    reduce_only=reduce_only,
                )
            else:
                order, resp, error = await self._signer_client.create_order(
                    market_index=market_index,
                    client_order_index=client_order_index,
                    base_amount=amount_int,
                    price=price_int,
                    is_ask=is_ask,
                    order_type=ORDER_TYPE_LIMIT,
                    time_in_force=TIME_IN_FORCE_GTT,
                    reduce_only=reduce_only,
                )
            if error is not None:
                logger.error(f"Order rejected: {error}")
                return OrderResult(success=False, error=str(error), raw_response=str(resp) if resp else None)
            order_id = str(client_order_index)
            filled_price = getattr(order, "avg_execution_price", None) or getattr(order, "price", None)
            filled_amount = getattr(order, "filled_amount", None) or getattr(order, "base_amount", None)
            order_status = getattr(order, "status", None)
            logger.info(
                f"Order placed: {order_id} ({'market' if market else 'limit'}"
                f"{', reduce-only' if reduce_only else ''}) account={self.account_index}"
            )
            return OrderResult(
                success=True,
                order_id=order_id,
                tx_hash=_tx_hash(resp),
                filled_price=float(filled_price) / 10 ** meta["price_decimals"] if filled_price is not None else None,
                filled_amount=float(filled_amount) / 10 ** meta["size_decimals"] if filled_amount is not None else None,
                order_status=str(order_status) if order_status is not None else None,
                raw_response=str(resp) if resp else None,
            )
        except Exception as e:
            logger.error(f"Order failed: {e}")
            return OrderResult(success=False, error=str(e))

    async def update_leverage(self, market_index: int, leverage: int) -> OrderResult:
        """Set cross-margin leverage for a market on this account."""
        await self._ensure_clients()
        try:
            _tx, resp, error = await self._signer_client.update_leverage(
                market_index=market_index,
                margin_mode=CROSS_MARGIN_MODE,
                leverage=leverage,
            )
            if error is not None:
                logger.error(f"Leverage update rejected: {error}")
                return OrderResult(success=False, error=str(error))
            return OrderResult(success=True, tx_hash=_tx_hash(resp))
        except Exception as e:
            logger.error(f"Leverage update failed: {e}")
            return OrderResult(success=False, error=str(e))

    async def list_subaccounts(self, l1_address: str) -> list[int]:
        """Account indexes of every sub-account owned by ``l1_address``."""
        await self._ensure_clients()
        account_api = lighter.AccountApi(self._api_client)
        resp = await account_api.accounts_by_l1_address(l1_address=l1_address)
        return [int(sub.index) for sub in (getattr(resp, "sub_accounts", None) or [])]

    async def create_subaccount(self, l1_address: str) -> tuple[int | None, str | None]:
        """Create a sub-account under this (master) account.

        The SDK response does not carry the new index, so it is discovered by
        diffing the L1 address's sub-accounts before and after.
        Returns ``(account_index, error)``.
        """
        await self._ensure_clients()
        try:
            before = set(await self.list_subaccounts(l1_address))
            _tx, resp, error = await self._signer_client.create_sub_account()
            if error is not None:
                logger.error(f"Sub-account creation rejected: {error}")
                return None, str(error)
            after = await self.list_subaccounts(l1_address)
            new = sorted(set(after) - before)
            if not new:
                return None, "sub-account created but not yet visible"
            logger.info(f"Created sub-account {new[-1]} under {self.account_index}")
            return new[-1], None
        except Exception as e:
            logger.error(f"Sub-account creation failed: {e}")
            return None, str(e)

    async def transfer_collateral(self, to_account_index: int, amount: float) -> OrderResult:
        """Move USDC collateral from this account to ``to_account_index``."""
        await self._ensure_clients()
        try:
            _tx, resp, error = await self._signer_client.transfer(
                to_account_index=to_account_index,
                usdc_amount=int(round(amount * 10 ** USDC_DECIMALS)),
                fee=0,
                memo=EMPTY_MEMO,
            )
            if error is not None:
                logger.error(f"Transfer rejected: {error}")
                return OrderResult(success=False, error=str(error))
            logger.info(f"Transferred {amount:.2f} USDC {self.account_index} → {to_account_index}")
            return OrderResult(success=True, tx_hash=_tx_hash(resp))
        except Exception as e:
            logger.error(f"Transfer failed: {e}")
            return OrderResult(success=False, error=str(e))

    async def get_account(self) -> AccountState:
        """Equity, free collateral and signed positions for this account."""
        await self._ensure_clients()
        account = await self._get_account("index", str(self.account_index))
        state = AccountState(
            account_index=self.account_index,
            equity=float(getattr(account, "total_asset_value", None) or getattr(account, "collateral", 0) or 0),
            available=float(getattr(account, "available_balance", 0) or 0),
        )
        for pos in getattr(account, "positions", None) or []:
            size = float(getattr(pos, "position", 0) or 0)
            if abs(size) < 1e-10:
                continue
            sign = int(getattr(pos, "sign", 1) or 1)
            market_index = int(getattr(pos, "market_id", 0))
            state.positions[market_index] = size * (1 if sign >= 0 else -1)
            state.entry_prices[market_index] = float(getattr(pos, "avg_entry_price", 0) or 0)
        return state

    async def get_balance(self) -> float:
        """Get available USDC balance."""
        return (await self.get_account()).available

    async def settle_pnl(self, market_index: int) -> OrderResult:
        """Lighter settles PnL into collateral continuously; nothing to submit."""
        logger.debug(f"settle_pnl no-op for market {market_index} on account {self.account_index}")
        return OrderResult(success=True)

    async def close(self):
        """Close SDK clients."""
        if self._signer_client is not None:
            await self._signer_client.close()
        if self._api_client is not None:
            await self._api_client.close()
        self._api_client = None
        self._signer_client = None
        self._market_meta = {}
        self.private_key = ""


async def fetch_mid_price(host: str, market_index: int) -> float | None:
    """Public order book mid price, or None when a side is empty."""
    client = lighter.ApiClient(configuration=lighter.Configuration(host=host))
    try:
        api = lighter.OrderApi(client)
        book = await api.order_book_orders(market_id=market_index, limit=1)
        bids = getattr(book, "bids", None) or []
        asks = getattr(book, "asks", None) or []
        if not bids or not asks:
            return None
        return (float(bids[0].price) + float(asks[0].price)) / 2
    finally:
        await client.close()
