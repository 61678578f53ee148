"""Database models."""

from perpbot.models.credential import Credential
from perpbot.models.bot import Bot
from perpbot.models.webhook_signal import WebhookSignal
from perpbot.models.trade_record import TradeRecord
from perpbot.models.position_snapshot import PositionSnapshot
from perpbot.models.retry_entry import RetryEntry
from perpbot.models.orphaned_resource import OrphanedResource
from perpbot.models.bot_event import BotEvent

__all__ = [
    "Credential",
    "Bot",
    "WebhookSignal",
    "TradeRecord",
    "PositionSnapshot",
    "RetryEntry",
    "OrphanedResource",
    "BotEvent",
]
