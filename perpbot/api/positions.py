"""Position snapshots API."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from perpbot.api.deps import get_current_operator, get_runtime
from perpbot.database import get_session
from perpbot.engine.runtime import Runtime
from perpbot.models.bot import Bot
from perpbot.models.position_snapshot import PositionSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(get_current_operator)])


@router.get("")
def list_positions(
    bot_id: int | None = None,
    open_only: bool = False,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    stmt = select(PositionSnapshot).order_by(PositionSnapshot.bot_id)
    if bot_id is not None:
        stmt = stmt.where(PositionSnapshot.bot_id == bot_id)
    rows = session.exec(stmt).all()
    if open_only:
        rows = [r for r in rows if abs(r.base_size) > runtime.settings.dust_threshold]
    return rows


@router.get("/{bot_id}/venue")
async def venue_position(
    bot_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Live venue view of the bot's sub-account next to the local snapshot.

    Unrealized P&L uses the cached mid price.
    """
    bot = session.get(Bot, bot_id)
    if not bot:
        raise HTTPException(status_code=404, detail="Bot not found")
    market = runtime.markets.get(bot.market)
    if market is None:
        raise HTTPException(status_code=422, detail=f"Market {bot.market} is not configured")

    try:
        account = await runtime.executor.get_account(bot_id)
    except Exception as e:
        logger.error(f"[bot {bot_id}] Venue position read failed: {e}")
        raise HTTPException(status_code=502, detail=f"Venue read failed: {e}")

    snap = runtime.positions.get(bot_id, market.symbol)
    local_size = snap.base_size if snap else 0.0
    if account is None:
        return {
            "bot_id": bot_id,
            "market": market.symbol,
            "subaccount_index": None,
            "local_size": local_size,
            "venue_size": 0.0,
        }

    size = account.positions.get(market.market_index, 0.0)
    entry_price = account.entry_prices.get(market.market_index, 0.0)
    current_price = await runtime.price_feed.get_price(market)
    pnl = (current_price - entry_price) * size if current_price and entry_price else 0.0
    notional = abs(size) * entry_price
    pnl_pct = (pnl / notional * 100) if notional > 0 else 0.0

    return {
        "bot_id": bot_id,
        "market": market.symbol,
        "subaccount_index": bot.subaccount_index,
        "local_size": local_size,
        "venue_size": size,
        "entry_price": entry_price,
        "current_price": current_price,
        "equity": account.equity,
        "available": account.available,
        "unrealized_pnl": round(pnl, 4),
        "unrealized_pnl_pct": round(pnl_pct, 2),
        "drift": round(size - local_size, 8),
    }
