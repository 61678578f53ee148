"""Shared fixtures: in-memory database, fake venue, fixed prices, recording notifier."""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet
from sqlmodel import Session

from perpbot.config import Settings
from perpbot.database import build_engine, create_db_and_tables
from perpbot.engine.runtime import build_runtime
from perpbot.models.bot import Bot
from perpbot.models.credential import Credential
from perpbot.services.lighter_client import AccountState, OrderResult
from perpbot.utils.clock import utcnow

MASTER_ACCOUNT = 1
SOL_INDEX = 2


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

@dataclass
class VenueState:
    """Everything the fake venue knows, shared by every client it hands out."""

    accounts: dict[int, AccountState] = field(default_factory=dict)
    next_subaccount: int = 100
    order_errors: list = field(default_factory=list)  # popped per place_order; None = fill
    fill_price: float | None = None
    hang_after_fill: bool = False
    create_error: str | None = None
    transfer_error: str | None = None
    leverage_error: str | None = None
    on_get_account: object = None
    read_delay: float = 0.0
    orders: list[dict] = field(default_factory=list)
    leverage_calls: list[tuple[int, int]] = field(default_factory=list)
    transfers: list[tuple[int, int, float]] = field(default_factory=list)
    closed: int = 0

    def account(self, index: int) -> AccountState:
        if index not in self.accounts:
            self.accounts[index] = AccountState(account_index=index)
        return self.accounts[index]


class FakeVenue:
    """Stands in for LighterClient; fills market and limit orders instantly."""

    def __init__(self, state: VenueState, account_index: int):
        self.state = state
        self.account_index = account_index

    async def get_account(self) -> AccountState:
        if self.state.read_delay:
            await asyncio.sleep(self.state.read_delay)
        if self.state.on_get_account is not None:
            self.state.on_get_account()
        acct = self.state.account(self.account_index)
        return AccountState(
            account_index=acct.account_index,
            equity=acct.equity,
            available=acct.available,
            positions=dict(acct.positions),
            entry_prices=dict(acct.entry_prices),
        )

    async def place_order(self, market_index, base_amount, price, is_ask, reduce_only=False,
                          client_order_index=None, market=True) -> OrderResult:
        self.state.orders.append(dict(
            account=self.account_index, market_index=market_index, base_amount=base_amount,
            price=price, is_ask=is_ask, reduce_only=reduce_only, market=market,
        ))
        if self.state.order_errors:
            error = self.state.order_errors.pop(0)
            if error is not None:
                return OrderResult(success=False, error=error)

        acct = self.state.account(self.account_index)
        current = acct.positions.get(market_index, 0.0)
        delta = -base_amount if is_ask else base_amount
        fill = self.state.fill_price or price
        new = current + delta
        if abs(new) < 1e-12:
            acct.positions.pop(market_index, None)
            acct.entry_prices.pop(market_index, None)
        else:
            acct.positions[market_index] = new
            acct.entry_prices.setdefault(market_index, fill)

        if self.state.hang_after_fill:
            # Landed on the venue, but the caller never hears back
            await asyncio.sleep(10)
        return OrderResult(
            success=True, order_id=str(len(self.state.orders)), tx_hash=f"0xtx{len(self.state.orders)}",
            filled_price=fill, filled_amount=base_amount,
        )

    async def update_leverage(self, market_index, leverage) -> OrderResult:
        self.state.leverage_calls.append((market_index, leverage))
        if self.state.leverage_error:
            return OrderResult(success=False, error=self.state.leverage_error)
        return OrderResult(success=True)

    async def create_subaccount(self, l1_address):
        if self.state.create_error:
            return None, self.state.create_error
        index = self.state.next_subaccount
        self.state.next_subaccount += 1
        self.state.account(index)
        return index, None

    async def transfer_collateral(self, to_account_index, amount) -> OrderResult:
        if self.state.transfer_error:
            return OrderResult(success=False, error=self.state.transfer_error)
        self.state.transfers.append((self.account_index, to_account_index, amount))
        src, dst = self.state.account(self.account_index), self.state.account(to_account_index)
        src.equity -= amount
        src.available -= amount
        dst.equity += amount
        dst.available += amount
        return OrderResult(success=True, tx_hash="0xtransfer")

    async def settle_pnl(self, market_index) -> OrderResult:
        return OrderResult(success=True)

    async def close(self):
        self.state.closed += 1


class StaticPriceFeed:
    """PriceFeed stand-in; ``prices`` maps symbol → price (None = unusable)."""

    def __init__(self, prices: dict[str, float | None] | None = None):
        self.prices = dict(prices or {})

    async def get_price(self, market):
        return self.prices.get(market.symbol)


class RecordingNotifier:
    enabled = False

    def __init__(self):
        self.messages: list[tuple[str, int | None]] = []

    async def notify(self, message: str, chat_id: int | None = None):
        self.messages.append((message, chat_id))

    async def close(self):
        pass


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        encryption_key=Fernet.generate_key().decode(),
        jwt_secret="test-secret",
        venue_call_timeout_seconds=0.2,
        retry_jitter_seconds=0.0,
        public_base_url="https://bots.example.com",
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def venue() -> VenueState:
    state = VenueState()
    state.accounts[MASTER_ACCOUNT] = AccountState(account_index=MASTER_ACCOUNT, equity=10_000.0, available=10_000.0)
    return state


@pytest.fixture
def prices() -> StaticPriceFeed:
    return StaticPriceFeed({"SOL": 150.0, "ETH": 3000.0, "BTC": 60_000.0})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime(settings, engine, venue, prices, notifier, clock):
    return build_runtime(
        settings,
        engine=engine,
        price_feed=prices,
        notifier=notifier,
        venue_factory=lambda cred, pk, index: FakeVenue(venue, index),
        clock=clock,
        rng=lambda: 0.0,
    )


@pytest.fixture
def make_bot(runtime):
    """Insert a credential + bot; returns a detached Bot."""

    def _make(**overrides) -> Bot:
        with Session(runtime.engine) as session:
            cred = Credential(
                name="test",
                private_key_encrypted=runtime.secrets.encrypt("ab" * 32),
                account_index=MASTER_ACCOUNT,
                l1_address="0x" + "11" * 20,
            )
            session.add(cred)
            session.commit()
            session.refresh(cred)

            fields = dict(
                name="sol-bot",
                credential_id=cred.id,
                market="SOL",
                leverage=5,
                max_position_size=300.0,
                execution_authorized=True,
                initial_deposit=300.0,
                webhook_secret="s3cret",
            )
            fields.update(overrides)
            bot = Bot(**fields)
            session.add(bot)
            session.commit()
            session.refresh(bot)
            session.expunge(bot)
            return bot

    return _make


@pytest.fixture
def fund_bot(runtime, venue):
    """Give a bot a funded sub-account with an optional SOL position on the venue."""

    def _fund(bot: Bot, equity: float = 300.0, position: float = 0.0, entry: float = 0.0) -> int:
        index = 200 + bot.id
        with Session(runtime.engine) as session:
            db_bot = session.get(Bot, bot.id)
            db_bot.subaccount_index = index
            db_bot.subaccount_funded = True
            session.add(db_bot)
            session.commit()
        acct = venue.account(index)
        acct.equity = equity
        acct.available = equity
        if position:
            acct.positions[SOL_INDEX] = position
            acct.entry_prices[SOL_INDEX] = entry
        return index

    return _fund


def get_row(runtime, model, row_id):
    with Session(runtime.engine) as session:
        row = session.get(model, row_id)
        if row is not None:
            session.expunge(row)
        return row
