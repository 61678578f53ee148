"""Local position snapshots with optimistic (version counter) writes.

Trade fills and reconciler overwrites both go through a compare-and-swap on
``PositionSnapshot.version``. A reconciler pass that read the snapshot before
a trade landed therefore loses the race instead of clobbering the fill.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from perpbot.models.position_snapshot import PositionSnapshot
from perpbot.utils.clock import utcnow

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


@dataclass
class FillOutcome:
    base_size: float
    avg_entry_price: float
    realized_pnl: float  # realized by this fill, before fees
    version: int


def apply_fill_math(
    size: float, avg_price: float, delta: float, price: float, dust: float = 1e-9
) -> tuple[float, float, float]:
    """New (size, avg_entry_price, realized_pnl) after a signed fill of ``delta`` at ``price``."""
    if abs(delta) <= dust:
        return size, avg_price, 0.0

    if abs(size) <= dust or (size > 0) == (delta > 0):
        new_size = size + delta
        new_avg = (abs(size) * avg_price + abs(delta) * price) / abs(new_size)
        return new_size, new_avg, 0.0

    closed = min(abs(delta), abs(size))
    direction = 1.0 if size > 0 else -1.0
    realized = closed * (price - avg_price) * direction
    new_size = size + delta
    if abs(new_size) <= dust:
        return 0.0, 0.0, realized
    if abs(delta) > abs(size):
        # Flipped through zero: the remainder opened at the fill price
        return new_size, price, realized
    return new_size, avg_price, realized


class PositionBook:
    def __init__(self, engine: Engine, dust_threshold: float = 1e-4):
        self.engine = engine
        self.dust_threshold = dust_threshold

    def get(self, bot_id: int, market: str) -> PositionSnapshot | None:
        with Session(self.engine) as session:
            snap = session.exec(
                select(PositionSnapshot).where(
                    PositionSnapshot.bot_id == bot_id, PositionSnapshot.market == market
                )
            ).first()
            if snap is not None:
                session.expunge(snap)
            return snap

    def get_or_create(self, bot_id: int, market: str) -> PositionSnapshot:
        snap = self.get(bot_id, market)
        if snap is not None:
            return snap
        with Session(self.engine) as session:
            session.add(PositionSnapshot(bot_id=bot_id, market=market))
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently; the unique (bot, market) row wins
                session.rollback()
        return self.get(bot_id, market)

    def _cas_write(self, snap_id: int, expected_version: int, **values) -> bool:
        values["version"] = expected_version + 1
        values["updated_at"] = utcnow()
        with Session(self.engine) as session:
            result = session.execute(
                update(PositionSnapshot)
                .where(PositionSnapshot.id == snap_id, PositionSnapshot.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount == 1

    def apply_fill(
        self,
        bot_id: int,
        market: str,
        signed_delta: float,
        price: float,
        fee: float = 0.0,
        trade_id: int | None = None,
    ) -> FillOutcome:
        """Fold an executed trade into the snapshot, retrying on version conflicts."""
        for _ in range(MAX_CAS_ATTEMPTS):
            snap = self.get_or_create(bot_id, market)
            new_size, new_avg, realized = apply_fill_math(
                snap.base_size, snap.avg_entry_price, signed_delta, price, self.dust_threshold
            )
            ok = self._cas_write(
                snap.id,
                snap.version,
                base_size=new_size,
                avg_entry_price=new_avg,
                cost_basis=abs(new_size) * new_avg,
                realized_pnl=snap.realized_pnl + realized,
                total_fees=snap.total_fees + fee,
                last_trade_id=trade_id if trade_id is not None else snap.last_trade_id,
                note=None,
            )
            if ok:
                logger.debug(
                    f"[bot {bot_id}] Snapshot {market}: {snap.base_size} → {new_size} @ {new_avg:.4f}"
                )
                return FillOutcome(new_size, new_avg, realized, snap.version + 1)
            logger.debug(f"[bot {bot_id}] Snapshot version conflict on {market}, retrying")
        raise RuntimeError(f"snapshot for bot {bot_id} {market} kept changing under apply_fill")

    def zero(self, bot_id: int, market: str, price: float | None, fee: float = 0.0, trade_id: int | None = None) -> FillOutcome:
        """Record a full close: realize PnL on whatever the snapshot held."""
        for _ in range(MAX_CAS_ATTEMPTS):
            snap = self.get_or_create(bot_id, market)
            realized = 0.0
            if price and abs(snap.base_size) > 0:
                realized = abs(snap.base_size) * (price - snap.avg_entry_price) * (1 if snap.base_size > 0 else -1)
            ok = self._cas_write(
                snap.id,
                snap.version,
                base_size=0.0,
                avg_entry_price=0.0,
                cost_basis=0.0,
                realized_pnl=snap.realized_pnl + realized,
                total_fees=snap.total_fees + fee,
                last_trade_id=trade_id if trade_id is not None else snap.last_trade_id,
                note=None,
            )
            if ok:
                return FillOutcome(0.0, 0.0, realized, snap.version + 1)
        raise RuntimeError(f"snapshot for bot {bot_id} {market} kept changing under zero")

    def overwrite(
        self,
        bot_id: int,
        market: str,
        expected_version: int,
        base_size: float,
        avg_entry_price: float,
        note: str | None = None,
        equity: float | None = None,
    ) -> bool:
        """Replace the snapshot with venue truth if nobody wrote since ``expected_version``."""
        snap = self.get_or_create(bot_id, market)
        if abs(base_size) <= self.dust_threshold:
            base_size, avg_entry_price = 0.0, 0.0
        values = dict(
            base_size=base_size,
            avg_entry_price=avg_entry_price,
            cost_basis=abs(base_size) * avg_entry_price,
            note=note,
            reconciled_at=utcnow(),
        )
        if equity is not None:
            values["equity"] = equity
        ok = self._cas_write(snap.id, expected_version, **values)
        if not ok:
            logger.info(f"[reconcile] bot {bot_id} {market}: snapshot changed during pass, not overwritten")
        return ok

    def touch_reconciled(self, bot_id: int, market: str, expected_version: int, equity: float | None) -> bool:
        """Stamp a clean reconcile; writes nothing else when equity is unchanged."""
        snap = self.get_or_create(bot_id, market)
        with Session(self.engine) as session:
            stmt = (
                update(PositionSnapshot)
                .where(PositionSnapshot.id == snap.id, PositionSnapshot.version == expected_version)
                .values(reconciled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if equity is not None and snap.equity != equity:
                stmt = stmt.values(equity=equity)
            result = session.execute(stmt)
            session.commit()
        return result.rowcount == 1
