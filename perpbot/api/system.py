"""System API: health check, scheduler status, retry queue, reconciliation, orphans, events."""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session, select

from perpbot.api.deps import get_current_operator, get_runtime
from perpbot.database import get_session
from perpbot.engine.runtime import Runtime
from perpbot.engine.scheduler import get_scheduler_status
from perpbot.models.bot import Bot
from perpbot.models.bot_event import BotEvent
from perpbot.models.orphaned_resource import OrphanedResource

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(get_current_operator)])
def scheduler_status(request: Request):
    """Current scheduler state with job details."""
    return get_scheduler_status(getattr(request.app.state, "scheduler", None))


@router.get("/retry-queue", dependencies=[Depends(get_current_operator)])
def retry_queue_status(runtime: Runtime = Depends(get_runtime)):
    return runtime.retry_queue.status()


@router.post("/retry-queue/sweep", dependencies=[Depends(get_current_operator)])
async def trigger_sweep(runtime: Runtime = Depends(get_runtime)):
    """Run one retry sweep now instead of waiting for the scheduler."""
    return await runtime.retry_queue.sweep()


@router.post("/reconcile/{bot_id}", dependencies=[Depends(get_current_operator)])
async def trigger_reconcile(
    bot_id: int,
    force: bool = True,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Reconcile one bot against the venue; ``force=false`` skips a fresh bot."""
    if not session.get(Bot, bot_id):
        raise HTTPException(status_code=404, detail="Bot not found")
    if force:
        return await runtime.reconciler.reconcile(bot_id)
    return await runtime.reconciler.reconcile_if_stale(bot_id)


@router.get("/orphans", dependencies=[Depends(get_current_operator)])
def list_orphans(
    status: str | None = None,
    bot_id: int | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(OrphanedResource).order_by(OrphanedResource.created_at.desc())
    if status is not None:
        stmt = stmt.where(OrphanedResource.status == status)
    if bot_id is not None:
        stmt = stmt.where(OrphanedResource.bot_id == bot_id)
    return session.exec(stmt).all()


@router.post("/orphans/run", dependencies=[Depends(get_current_operator)])
async def trigger_orphan_cleanup(runtime: Runtime = Depends(get_runtime)):
    return await runtime.orphans.run()


@router.get("/events", dependencies=[Depends(get_current_operator)])
def bot_events(
    bot_id: int | None = None,
    level: str | None = None,
    action: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(BotEvent).order_by(BotEvent.timestamp.desc(), BotEvent.id.desc())
    if bot_id is not None:
        stmt = stmt.where(BotEvent.bot_id == bot_id)
    if level is not None:
        stmt = stmt.where(BotEvent.level == level)
    if action is not None:
        stmt = stmt.where(BotEvent.action == action)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
