"""Exception taxonomy for the webhook-to-trade pipeline.

Venue failures are not exceptions here: the executor turns them into an
``ExecutionResult`` carrying an ``ErrorClass``. Everything below is raised
before any order reaches the venue.
"""


class PipelineError(Exception):
    """Base class for errors raised while turning a signal into an order."""


class ValidationError(PipelineError):
    """Malformed signal. Rejected immediately, never retried."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class DuplicateSignalError(PipelineError):
    """Signal hash already recorded inside the retention window."""

    def __init__(self, signal_hash: str):
        self.signal_hash = signal_hash
        super().__init__(f"duplicate signal {signal_hash[:12]}")


class SizingError(PipelineError):
    """Signal was valid but cannot be turned into an order. Permanent."""


class UnknownMarketError(SizingError):
    pass


class ZeroPriceError(SizingError):
    pass


class InsufficientCollateralError(SizingError):
    pass


class OrderTooSmallError(SizingError):
    pass


class BotNotFoundError(PipelineError):
    pass


class WebhookAuthError(PipelineError):
    pass


class BotUnavailableError(PipelineError):
    """Bot is paused or has not authorized execution."""
