"""Webhook de-duplication backed by a unique constraint on the signal hash."""

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from perpbot.errors import DuplicateSignalError
from perpbot.models.webhook_signal import WebhookSignal
from perpbot.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


def compute_signal_hash(bot_id: int, normalized_payload: dict[str, Any]) -> str:
    """sha256 over canonical JSON of (bot id, payload)."""
    canonical = json.dumps(
        {"bot_id": bot_id, "payload": normalized_payload},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyGuard:
    def __init__(self, engine: Engine, retention_hours: int = 24):
        self.engine = engine
        self.retention = timedelta(hours=retention_hours)

    def record(self, bot_id: int, signal_hash: str, action: str, payload: dict[str, Any]) -> int:
        """Insert the hash or raise DuplicateSignalError.

        The insert itself is the check, so two concurrent deliveries cannot
        both pass. A row older than the retention window is replaced.
        Returns the webhook_signal id.
        """
        for _ in range(2):
            with Session(self.engine) as session:
                row = WebhookSignal(bot_id=bot_id, signal_hash=signal_hash, action=action, payload=payload)
                session.add(row)
                try:
                    session.commit()
                    session.refresh(row)
                    return row.id
                except IntegrityError:
                    session.rollback()

                existing = session.exec(
                    select(WebhookSignal).where(WebhookSignal.signal_hash == signal_hash)
                ).first()
                if existing is None:
                    # Pruned between our insert and the lookup; try again
                    continue
                if utcnow() - as_utc(existing.received_at) < self.retention:
                    logger.info(f"[bot {bot_id}] Duplicate signal {signal_hash[:12]} ignored")
                    raise DuplicateSignalError(signal_hash)

                # Expired: only one concurrent replacer wins the delete
                result = session.execute(
                    delete(WebhookSignal).where(
                        WebhookSignal.id == existing.id,
                        WebhookSignal.received_at == existing.received_at,
                    )
                )
                session.commit()
                if result.rowcount == 0:
                    raise DuplicateSignalError(signal_hash)
        raise DuplicateSignalError(signal_hash)

    def prune(self) -> int:
        """Delete hashes older than the retention window."""
        cutoff = utcnow() - self.retention
        with Session(self.engine) as session:
            result = session.execute(delete(WebhookSignal).where(WebhookSignal.received_at < cutoff))
            session.commit()
        if result.rowcount:
            logger.info(f"Pruned {result.rowcount} expired webhook signal hashes")
        return result.rowcount
