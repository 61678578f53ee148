"""Markets API: list the configured Lighter markets."""

from fastapi import APIRouter, Depends, HTTPException

from perpbot.api.deps import get_current_operator, get_runtime
from perpbot.engine.runtime import Runtime

router = APIRouter(prefix="/api/markets", tags=["markets"], dependencies=[Depends(get_current_operator)])


@router.get("")
def list_markets(runtime: Runtime = Depends(get_runtime)):
    return [m.model_dump() for m in runtime.markets.all()]


@router.get("/{symbol}")
async def get_market(symbol: str, runtime: Runtime = Depends(get_runtime)):
    """Resolve a ticker (``BINANCE:SOLUSDT`` works) and include the current mid price."""
    market = runtime.markets.get(symbol)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    return {**market.model_dump(), "mid_price": await runtime.price_feed.get_price(market)}
