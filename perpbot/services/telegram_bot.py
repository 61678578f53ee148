"""Telegram notifications for bot owners and operators."""

import logging

from telegram import Bot as TelegramApi
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class Notifier:
    """Sends bot alerts to the bot's own chat plus the operator broadcast list.

    Without a token every message is only logged, which is what dev and
    test setups run with.
    """

    def __init__(self, token: str = "", operator_chat_ids: list[int] | None = None):
        self.operator_chat_ids = set(operator_chat_ids or [])
        self._api = TelegramApi(token=token) if token else None

    @property
    def enabled(self) -> bool:
        return self._api is not None

    async def notify(self, message: str, chat_id: int | None = None):
        """Deliver ``message``; delivery failures are logged, never raised."""
        logger.info(f"[notify] {message}")
        if self._api is None:
            return
        targets = set(self.operator_chat_ids)
        if chat_id is not None:
            targets.add(chat_id)
        for target in targets:
            try:
                await self._api.send_message(chat_id=target, text=message)
            except TelegramError as e:
                logger.warning(f"Failed to send Telegram notification to {target}: {e}")

    async def close(self):
        if self._api is not None:
            await self._api.shutdown()
