# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Generator, Iterable
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lockdrop.db.session import Base
from lockdrop.schemas.events import EventPayload, LedgerEvent
from lockdrop.services.event_log import LedgerEventLog
from lockdrop.services.indexer import EventIndexer, RetryPolicy
from lockdrop.services.points import PointsLedger
from lockdrop.services.stake_ledger import LedgerConfig, StakeLedger
from lockdrop.services.treasury import InMemoryTreasury
from lockdrop.services.vault_bridge import InMemoryVault, InMemoryWrappedAsset, VaultBridge
from lockdrop.utils.hash import GENESIS_DIGEST

TEST_DB_URL = "sqlite://"

OWNER = "owner-0001"
HOLDER = "lockdrop-ledger"
START_TIME = 1_000
WINDOW_END = 2_000
GRACE_PERIOD = 500
GRACE_DEADLINE = WINDOW_END + GRACE_PERIOD


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: int = START_TIME) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def set(self, now: int) -> int:
        self.now = now
        return self.now


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def treasury() -> InMemoryTreasury:
    return InMemoryTreasury()


@pytest.fixture()
def wrapped_asset(treasury: InMemoryTreasury) -> InMemoryWrappedAsset:
    return InMemoryWrappedAsset(custody=treasury)


@pytest.fixture()
def vault(wrapped_asset: InMemoryWrappedAsset) -> InMemoryVault:
    return InMemoryVault(asset=wrapped_asset, depositor=HOLDER)


@pytest.fixture()
def bridge(wrapped_asset: InMemoryWrappedAsset, vault: InMemoryVault) -> VaultBridge:
    return VaultBridge(wrapped_asset, vault, holder=HOLDER)


@pytest.fixture()
def ledger_config() -> LedgerConfig:
    return LedgerConfig(
        owner=OWNER,
        window_end=WINDOW_END,
        vault_grace_period_seconds=GRACE_PERIOD,
        min_stake=1,
    )


@pytest.fixture()
def make_ledger(
    treasury: InMemoryTreasury,
    bridge: VaultBridge,
    session_factory: sessionmaker[Session],
    clock: FakeClock,
) -> Callable[..., StakeLedger]:
    """Return a factory building initialized ledgers with overridable config."""

    def _make(**overrides) -> StakeLedger:
        config = LedgerConfig(
            owner=overrides.pop("owner", OWNER),
            window_end=overrides.pop("window_end", WINDOW_END),
            vault_grace_period_seconds=overrides.pop("vault_grace_period_seconds", GRACE_PERIOD),
            min_stake=overrides.pop("min_stake", 1),
        )
        ledger = StakeLedger(
            treasury,
            overrides.pop("vault_bridge", bridge),
            config=config,
            session_factory=session_factory,
            clock=clock,
        )
        ledger.initialize()
        return ledger

    return _make


@pytest.fixture()
def ledger(make_ledger: Callable[..., StakeLedger]) -> StakeLedger:
    return make_ledger()


@pytest.fixture()
def event_log(session_factory: sessionmaker[Session]) -> LedgerEventLog:
    return LedgerEventLog(session_factory, batch_size=2, poll_interval=0.0)


@pytest.fixture()
def points(session_factory: sessionmaker[Session], clock: FakeClock) -> PointsLedger:
    return PointsLedger(session_factory, rate=Decimal("1"), clock=clock)


@pytest.fixture()
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture()
def indexer(
    event_log: LedgerEventLog,
    points: PointsLedger,
    session_factory: sessionmaker[Session],
    retry_policy: RetryPolicy,
) -> EventIndexer:
    return EventIndexer(
        event_log,
        points,
        session_factory,
        name="test",
        retry=retry_policy,
        batch_size=2,
    )


@pytest.fixture()
def make_chain() -> Callable[[Iterable[tuple[int, EventPayload]]], list[LedgerEvent]]:
    """Return a builder for well-formed event chains from (timestamp, payload) pairs."""

    def _build(entries: Iterable[tuple[int, EventPayload]]) -> list[LedgerEvent]:
        events: list[LedgerEvent] = []
        prev = GENESIS_DIGEST
        for sequence, (timestamp, payload) in enumerate(entries, start=1):
            event = LedgerEvent.create(
                sequence=sequence,
                timestamp=timestamp,
                payload=payload,
                prev_digest=prev,
            )
            events.append(event)
            prev = event.digest
        return events

    return _build
