"""TradingView webhook receiver.

Validation and the idempotency insert happen inside the request; venue
execution is handed to a background task so TradingView gets its answer
well inside its own timeout.
"""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from perpbot.api.deps import get_runtime
from perpbot.engine.runtime import Runtime
from perpbot.engine.signal_validator import TradeIntent
from perpbot.errors import (
    BotNotFoundError,
    BotUnavailableError,
    DuplicateSignalError,
    ValidationError,
    WebhookAuthError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhook"])


async def _read_body(request: Request):
    # TradingView posts JSON as text/plain, so the content type is not trusted
    raw = await request.body()
    if not raw.strip():
        raise ValidationError("body", "empty request body")
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("body", "not valid JSON") from None


async def _execute_in_background(runtime: Runtime, intent: TradeIntent, signal_id: int):
    try:
        await runtime.pipeline.execute(intent, signal_id)
    except Exception as e:
        # The pipeline already logged it and wrote a bot event
        logger.error(f"[bot {intent.bot_id}] Background execution failed: {e}")


def _rejected(e: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"status": "rejected", "error": "validation_error", "field": e.field, "detail": e.message},
    )


@router.post("/tradingview/{bot_id}")
async def tradingview_webhook(
    bot_id: int,
    request: Request,
    background: BackgroundTasks,
    secret: str | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    try:
        body = await _read_body(request)
        if secret is None and isinstance(body, dict):
            secret = body.get("secret")
        intent, signal_id = runtime.pipeline.accept(bot_id, body, secret)
    except DuplicateSignalError as e:
        logger.info(f"[bot {bot_id}] Duplicate signal {e.signal_hash[:12]} ignored")
        return {"status": "duplicate", "signal_hash": e.signal_hash}
    except ValidationError as e:
        logger.info(f"[bot {bot_id}] Signal rejected: {e}")
        return _rejected(e)
    except BotNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WebhookAuthError as e:
        logger.warning(f"[bot {bot_id}] Webhook rejected: {e}")
        raise HTTPException(status_code=401, detail=str(e))
    except BotUnavailableError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if runtime.settings.execute_inline:
        result = await runtime.pipeline.execute(intent, signal_id)
        return {"status": "processed", "signal_id": signal_id, "result": result}

    background.add_task(_execute_in_background, runtime, intent, signal_id)
    return {"status": "queued", "signal_id": signal_id, "signal_hash": intent.signal_hash}
