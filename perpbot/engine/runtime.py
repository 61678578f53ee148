"""Process-scoped state: every long-lived collaborator, built once.

The FastAPI lifespan builds one ``Runtime`` and stores it on
``app.state.runtime``; tests build their own with fakes swapped in.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.engine import Engine

from perpbot.config import Settings
from perpbot.database import build_engine
from perpbot.engine.executor import TradeExecutor, VenueFactory, lighter_venue_factory
from perpbot.engine.idempotency import IdempotencyGuard
from perpbot.engine.ledger import TradeLedger
from perpbot.engine.locks import BotLockRegistry
from perpbot.engine.orphan_cleanup import OrphanCleaner
from perpbot.engine.pipeline import SignalPipeline
from perpbot.engine.position_sizer import PositionSizer
from perpbot.engine.positions import PositionBook
from perpbot.engine.reconciler import Reconciler
from perpbot.engine.retry_queue import RetryQueue
from perpbot.services.encryption import SecretBox
from perpbot.services.market_data import PriceFeed, lighter_price_fetcher
from perpbot.services.markets import MarketRegistry
from perpbot.services.telegram_bot import Notifier
from perpbot.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    engine: Engine
    markets: MarketRegistry
    secrets: SecretBox
    price_feed: PriceFeed
    locks: BotLockRegistry
    notifier: Notifier
    positions: PositionBook
    ledger: TradeLedger
    executor: TradeExecutor
    guard: IdempotencyGuard
    sizer: PositionSizer
    retry_queue: RetryQueue
    reconciler: Reconciler
    orphans: OrphanCleaner
    pipeline: SignalPipeline

    async def aclose(self):
        await self.notifier.close()
        self.engine.dispose()


def build_runtime(
    settings: Settings,
    engine: Engine | None = None,
    price_feed: PriceFeed | None = None,
    notifier: Notifier | None = None,
    venue_factory: VenueFactory = lighter_venue_factory,
    markets: MarketRegistry | None = None,
    clock: Callable[[], datetime] = utcnow,
    rng: Callable[[], float] = random.random,
) -> Runtime:
    """Wire every component. Keyword overrides exist for tests and the CLI."""
    engine = engine or build_engine(settings.database_url)
    markets = markets or MarketRegistry.load(settings.markets_file or None)
    secrets = SecretBox(settings.encryption_key)
    price_feed = price_feed or PriceFeed(
        lighter_price_fetcher(settings.lighter_host), ttl_seconds=settings.price_cache_ttl_seconds
    )
    notifier = notifier or Notifier(settings.telegram_bot_token, settings.telegram_chat_ids)
    locks = BotLockRegistry()

    positions = PositionBook(engine, dust_threshold=settings.dust_threshold)
    ledger = TradeLedger(engine, settings, positions, notifier)
    executor = TradeExecutor(engine, settings, secrets, venue_factory)
    guard = IdempotencyGuard(engine, retention_hours=settings.signal_retention_hours)
    sizer = PositionSizer(markets, dust_threshold=settings.dust_threshold)
    retry_queue = RetryQueue(
        engine, settings, executor, ledger, locks, markets, price_feed, clock=clock, rng=rng,
    )
    reconciler = Reconciler(engine, settings, executor, positions, ledger, retry_queue, locks, markets, clock=clock)
    orphans = OrphanCleaner(engine, settings, executor, ledger)
    pipeline = SignalPipeline(engine, settings, guard, sizer, price_feed, executor, ledger, retry_queue, locks)

    logger.info(f"Runtime ready: {len(markets)} markets, notifications {'on' if notifier.enabled else 'off'}")
    return Runtime(
        settings=settings,
        engine=engine,
        markets=markets,
        secrets=secrets,
        price_feed=price_feed,
        locks=locks,
        notifier=notifier,
        positions=positions,
        ledger=ledger,
        executor=executor,
        guard=guard,
        sizer=sizer,
        retry_queue=retry_queue,
        reconciler=reconciler,
        orphans=orphans,
        pipeline=pipeline,
    )
