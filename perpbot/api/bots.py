"""CRUD API for webhook trading bots."""

import logging
import secrets
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import delete
from sqlmodel import Session, select

from perpbot.api.deps import get_current_operator, get_runtime
from perpbot.database import get_session
from perpbot.engine.executor import VenueCommand
from perpbot.engine.runtime import Runtime
from perpbot.models.bot import Bot
from perpbot.models.credential import Credential
from perpbot.models.position_snapshot import PositionSnapshot
from perpbot.models.retry_entry import RetryEntry
from perpbot.models.webhook_signal import WebhookSignal
from perpbot.schemas.bot import BotCreate, BotCreated, BotRead, BotUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bots", tags=["bots"], dependencies=[Depends(get_current_operator)])

ACTIVE_RETRY_STATUSES = ("pending", "processing", "reconciling")


def webhook_url(runtime: Runtime, bot: Bot) -> str:
    base = runtime.settings.public_base_url.rstrip("/")
    return f"{base}/api/webhook/tradingview/{bot.id}?secret={bot.webhook_secret}"


def _get_bot(session: Session, bot_id: int) -> Bot:
    bot = session.get(Bot, bot_id)
    if not bot:
        raise HTTPException(status_code=404, detail="Bot not found")
    return bot


def _check_leverage(runtime: Runtime, market: str, leverage: int):
    market_info = runtime.markets.get(market)
    if leverage > market_info.max_leverage:
        raise HTTPException(
            status_code=422,
            detail=f"leverage {leverage}x exceeds the {market_info.max_leverage}x maximum for {market_info.symbol}",
        )


@router.get("", response_model=list[BotRead])
def list_bots(
    active: bool | None = None,
    owner_wallet: str | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(Bot).order_by(Bot.id)
    if active is not None:
        stmt = stmt.where(Bot.is_active == active)
    if owner_wallet is not None:
        stmt = stmt.where(Bot.owner_wallet == owner_wallet)
    return session.exec(stmt).all()


@router.post("", response_model=BotCreated, status_code=201)
def create_bot(
    data: BotCreate,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    if not session.get(Credential, data.credential_id):
        raise HTTPException(status_code=404, detail="Credential not found")

    market_info = runtime.markets.get(data.market)
    if market_info is None:
        raise HTTPException(status_code=422, detail=f"Unknown market: {data.market}")
    _check_leverage(runtime, market_info.symbol, data.leverage)

    payload = data.model_dump()
    payload["market"] = market_info.symbol
    bot = Bot(**payload, webhook_secret=secrets.token_urlsafe(24))
    session.add(bot)
    session.commit()
    session.refresh(bot)
    logger.info(f"[bot {bot.id}] Created '{bot.name}' on {bot.market} ({bot.leverage}x)")

    return BotCreated(
        **BotRead.model_validate(bot).model_dump(),
        webhook_url=webhook_url(runtime, bot),
        webhook_secret=bot.webhook_secret,
    )


@router.get("/{bot_id}", response_model=BotRead)
def get_bot(bot_id: int, session: Session = Depends(get_session)):
    return _get_bot(session, bot_id)


@router.put("/{bot_id}", response_model=BotRead)
def update_bot(
    bot_id: int,
    data: BotUpdate,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    bot = _get_bot(session, bot_id)
    update_data = data.model_dump(exclude_unset=True)
    if "leverage" in update_data:
        _check_leverage(runtime, bot.market, update_data["leverage"])

    for key, value in update_data.items():
        setattr(bot, key, value)
    bot.updated_at = datetime.now(timezone.utc)

    session.add(bot)
    session.commit()
    session.refresh(bot)
    return bot


@router.post("/{bot_id}/pause", response_model=BotRead)
def pause_bot(bot_id: int, session: Session = Depends(get_session)):
    bot = _get_bot(session, bot_id)
    if bot.pause_reason is None:
        bot.pause_reason = "Paused by operator"
        bot.updated_at = datetime.now(timezone.utc)
        session.add(bot)
        session.commit()
        session.refresh(bot)
    return bot


@router.post("/{bot_id}/resume", response_model=BotRead)
def resume_bot(
    bot_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    bot = _get_bot(session, bot_id)
    previous = bot.pause_reason
    bot.pause_reason = None
    bot.consecutive_failures = 0
    bot.updated_at = datetime.now(timezone.utc)
    session.add(bot)
    session.commit()
    session.refresh(bot)
    if previous:
        runtime.ledger.log_event(bot_id, "resume", f"Resumed by operator (was: {previous})")
    return bot


@router.post("/{bot_id}/rotate-secret", response_model=BotCreated)
def rotate_webhook_secret(
    bot_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Issue a new webhook secret; the old URL stops working immediately."""
    bot = _get_bot(session, bot_id)
    bot.webhook_secret = secrets.token_urlsafe(24)
    bot.updated_at = datetime.now(timezone.utc)
    session.add(bot)
    session.commit()
    session.refresh(bot)
    return BotCreated(
        **BotRead.model_validate(bot).model_dump(),
        webhook_url=webhook_url(runtime, bot),
        webhook_secret=bot.webhook_secret,
    )


@router.post("/{bot_id}/subaccount", response_model=BotRead)
async def provision_subaccount(
    bot_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Create and fund the bot's sub-account ahead of its first signal."""
    _get_bot(session, bot_id)
    async with runtime.locks.hold(bot_id):
        index, error = await runtime.executor.ensure_subaccount(bot_id)
    if index is None:
        raise HTTPException(status_code=502, detail=f"Sub-account provisioning failed: {error}")
    session.expire_all()
    return _get_bot(session, bot_id)


@router.delete("/{bot_id}", status_code=204)
async def delete_bot(
    bot_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    bot = _get_bot(session, bot_id)

    snapshots = session.exec(select(PositionSnapshot).where(PositionSnapshot.bot_id == bot_id)).all()
    if any(abs(s.base_size) > runtime.settings.dust_threshold for s in snapshots):
        raise HTTPException(
            status_code=409,
            detail="Cannot delete bot with an open position. Close it first.",
        )
    active_retry = session.exec(
        select(RetryEntry).where(RetryEntry.bot_id == bot_id, RetryEntry.status.in_(ACTIVE_RETRY_STATUSES))
    ).first()
    if active_retry:
        raise HTTPException(
            status_code=409,
            detail="Cannot delete bot while trades are still queued for retry.",
        )

    if bot.subaccount_index is not None:
        async with runtime.locks.hold(bot_id):
            result = await runtime.executor.execute(VenueCommand(action="delete_subaccount", bot_id=bot_id))
        if not result.success:
            # Deactivate and leave the sweep to orphan cleanup
            bot.is_active = False
            bot.updated_at = datetime.now(timezone.utc)
            session.add(bot)
            session.commit()
            runtime.executor.record_orphan(
                bot_id, bot.credential_id, bot.subaccount_index, "funded_untraded",
                f"collateral sweep on delete failed: {result.error}",
            )
            raise HTTPException(
                status_code=409,
                detail=f"Bot deactivated; sub-account sweep failed and will be retried: {result.error}",
            )

    session.execute(delete(RetryEntry).where(RetryEntry.bot_id == bot_id))
    session.execute(delete(WebhookSignal).where(WebhookSignal.bot_id == bot_id))
    session.execute(delete(PositionSnapshot).where(PositionSnapshot.bot_id == bot_id))
    session.delete(bot)
    session.commit()
    logger.info(f"[bot {bot_id}] Deleted")
