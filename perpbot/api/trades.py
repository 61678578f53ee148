"""Trade history API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from perpbot.api.deps import get_current_operator
from perpbot.database import get_session
from perpbot.models.trade_record import TradeRecord

router = APIRouter(prefix="/api/trades", tags=["trades"], dependencies=[Depends(get_current_operator)])


@router.get("")
def list_trades(
    bot_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(TradeRecord).order_by(TradeRecord.created_at.desc(), TradeRecord.id.desc())
    if bot_id is not None:
        stmt = stmt.where(TradeRecord.bot_id == bot_id)
    if status is not None:
        stmt = stmt.where(TradeRecord.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/{trade_id}")
def get_trade(trade_id: int, session: Session = Depends(get_session)):
    trade = session.get(TradeRecord, trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade
