"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio

from subscription_ledger.config import Settings
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.core.relayer import RelayerService
from subscription_ledger.infrastructure import InMemoryEventLog, InMemoryTokenVault
from subscription_ledger.sdk.client import SubscriptionClient
from subscription_ledger.workers.payment_scheduler import PaymentScheduler
from subscription_ledger.workers.reconciler import EventLogReconciler

OWNER = "0xowner"
MERCHANT = "0xmerchant"
RELAYER = "0xrelayer"
TOKEN = "SPT"
T0 = 1_700_000_000


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "race: concurrency and ordering tests")


class FakeClock:
    """Manually advanced ledger clock."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        owner_address=OWNER,
        settlement_tokens=TOKEN,
        default_token=TOKEN,
        relayer_address=RELAYER,
        fee_m_enabled=True,
        ledger_call_timeout_seconds=1.0,
        app_name="subscription-ledger-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def vault() -> InMemoryTokenVault:
    return InMemoryTokenVault()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def ledger(
    vault: InMemoryTokenVault, event_log: InMemoryEventLog, clock: FakeClock
) -> SettlementLedger:
    return SettlementLedger(
        vault=vault,
        event_log=event_log,
        owner=OWNER,
        supported_tokens=[TOKEN],
        relayer_address=RELAYER,
        fee_m_enabled=True,
        clock=clock,
    )


@pytest.fixture
def fund(vault: InMemoryTokenVault, ledger: SettlementLedger) -> Callable[..., None]:
    """Mint tokens to a subscriber and approve the ledger to pull them."""

    def _fund(subscriber: str, balance: int = 1000, allowance: int | None = None) -> None:
        vault.mint(TOKEN, subscriber, balance)
        vault.approve(TOKEN, subscriber, ledger.address, balance if allowance is None else allowance)

    return _fund


@pytest.fixture
def make_plan(ledger: SettlementLedger) -> Callable[..., Any]:
    """Create a plan for MERCHANT, price 10 every 60 seconds by default."""

    async def _make_plan(
        name: str = "basic",
        price_amount: int = 10,
        interval: int = 60,
        supports_membership_token: bool = False,
        max_subscribers: int = 1000,
        merchant: str = MERCHANT,
    ) -> str:
        return await ledger.create_plan(
            merchant, name, price_amount, interval, supports_membership_token, max_subscribers
        )

    return _make_plan


@pytest_asyncio.fixture
async def reconciler(event_log: InMemoryEventLog) -> AsyncGenerator[EventLogReconciler, Any]:
    reconciler = EventLogReconciler(event_log, queue_size=100)
    yield reconciler
    await reconciler.stop()


@pytest_asyncio.fixture
async def scheduler(ledger: SettlementLedger) -> AsyncGenerator[PaymentScheduler, Any]:
    scheduler = PaymentScheduler(ledger, interval_minutes=60, call_timeout=1.0)
    yield scheduler
    await scheduler.stop()


@pytest.fixture
def relayer(ledger: SettlementLedger, vault: InMemoryTokenVault) -> RelayerService:
    return RelayerService(ledger, vault, relayer_address=RELAYER, enabled=True)


@pytest.fixture
def client(
    ledger: SettlementLedger,
    reconciler: EventLogReconciler,
    vault: InMemoryTokenVault,
    test_settings: Settings,
) -> SubscriptionClient:
    """Client without a relayer: payments go straight to the ledger."""
    return SubscriptionClient(
        ledger,
        caller=MERCHANT,
        reconciler=reconciler,
        vault=vault,
        settings=test_settings,
    )
