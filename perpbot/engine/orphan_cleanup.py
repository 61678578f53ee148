"""Periodic cleanup of venue resources left behind by partial failures.

Record kinds:
- ``unfunded_subaccount``: sub-account created, deposit failed.
- ``funded_untraded``: sub-account funded, first order failed permanently.

Active bots get their funding re-attempted; inactive or deleted bots have
their collateral swept back to the master account. After
``orphan_max_retries`` failed attempts a record is abandoned for manual action.
"""

import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from perpbot.config import Settings
from perpbot.engine.executor import TradeExecutor, VenueCommand
from perpbot.engine.ledger import TradeLedger
from perpbot.models.bot import Bot
from perpbot.models.orphaned_resource import OrphanedResource
from perpbot.models.trade_record import TradeRecord
from perpbot.utils.clock import utcnow

logger = logging.getLogger(__name__)


class OrphanCleaner:
    def __init__(self, engine: Engine, settings: Settings, executor: TradeExecutor, ledger: TradeLedger):
        self.engine = engine
        self.settings = settings
        self.executor = executor
        self.ledger = ledger

    def _update(self, orphan_id: int, **values):
        with Session(self.engine) as session:
            orphan = session.get(OrphanedResource, orphan_id)
            for key, value in values.items():
                setattr(orphan, key, value)
            orphan.updated_at = utcnow()
            session.add(orphan)
            session.commit()

    def _has_executed_trade(self, bot_id: int) -> bool:
        with Session(self.engine) as session:
            return session.exec(
                select(TradeRecord.id).where(TradeRecord.bot_id == bot_id, TradeRecord.status == "executed")
            ).first() is not None

    async def run(self) -> dict:
        counts = {"resolved": 0, "retried": 0, "abandoned": 0}
        with Session(self.engine) as session:
            orphans = session.exec(
                select(OrphanedResource).where(OrphanedResource.status == "pending")
            ).all()
            for o in orphans:
                session.expunge(o)

        for orphan in orphans:
            try:
                outcome = await self._handle(orphan)
            except Exception as e:
                logger.error(f"Orphan {orphan.id} cleanup crashed: {e}", exc_info=True)
                outcome = self._record_attempt(orphan, str(e))
            counts[outcome] = counts.get(outcome, 0) + 1

        if orphans:
            logger.info(f"Orphan cleanup over {len(orphans)} records: {counts}")
        return counts

    async def _handle(self, orphan: OrphanedResource) -> str:
        with Session(self.engine) as session:
            bot = session.get(Bot, orphan.bot_id)
            if bot is not None:
                session.expunge(bot)

        belongs_to_bot = bot is not None and bot.subaccount_index == orphan.subaccount_index

        if belongs_to_bot and bot.is_active:
            if orphan.kind == "unfunded_subaccount":
                if bot.subaccount_funded:
                    return self._resolve(orphan, "sub-account funded since")
                index, error = await self.executor.ensure_subaccount(bot.id)
                if index is not None:
                    return self._resolve(orphan, "funding retried successfully")
                return self._record_attempt(orphan, error or "funding failed")

            if self._has_executed_trade(bot.id):
                return self._resolve(orphan, "bot has traded since")
            # Funded and idle on an active bot is the owner's call, not ours
            return self._record_attempt(orphan, "funded sub-account still untraded")

        if bot is None or not belongs_to_bot:
            # Nothing left that the executor can sign for through a bot
            return self._abandon(orphan, "bot deleted or sub-account reassigned; sweep manually")

        result = await self.executor.execute(VenueCommand(action="delete_subaccount", bot_id=bot.id))
        if result.success:
            return self._resolve(orphan, "collateral swept to master account")
        return self._record_attempt(orphan, result.error or "sweep failed")

    def _resolve(self, orphan: OrphanedResource, reason: str) -> str:
        self._update(orphan.id, status="resolved", last_error=None, reason=reason)
        self.ledger.log_event(orphan.bot_id, "orphan", f"Orphan {orphan.kind} resolved: {reason}")
        logger.info(f"Orphan {orphan.id} ({orphan.kind}, bot {orphan.bot_id}) resolved: {reason}")
        return "resolved"

    def _abandon(self, orphan: OrphanedResource, reason: str) -> str:
        self._update(orphan.id, status="abandoned", last_error=reason)
        self.ledger.log_event(
            orphan.bot_id, "orphan",
            f"Orphan {orphan.kind} on sub-account {orphan.subaccount_index} abandoned: {reason}",
            level="warning",
        )
        logger.warning(
            f"Orphan {orphan.id} ({orphan.kind}, sub-account {orphan.subaccount_index}) "
            f"needs manual cleanup: {reason}"
        )
        return "abandoned"

    def _record_attempt(self, orphan: OrphanedResource, error: str) -> str:
        retry_count = orphan.retry_count + 1
        if retry_count >= self.settings.orphan_max_retries:
            self._update(orphan.id, retry_count=retry_count)
            return self._abandon(orphan, f"gave up after {retry_count} attempts: {error}")
        self._update(orphan.id, retry_count=retry_count, last_error=error)
        return "retried"
