"""Global test fixtures for the 2-Check test suite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from twocheck.core.config import CoreSettings, clear_settings_cache
from twocheck.core.interfaces import InMemoryLedgerClient, RecordingNotificationSender
from twocheck.core.locks import KeyedLock
from twocheck.core.outbox import Outbox
from twocheck.core.protocol_config import clear_protocol_config_cache, load_protocol_config
from twocheck.core.scheduler import DeadlineScheduler
from twocheck.protocol.orchestrator import Orchestrator

# A Wednesday, inside business hours
START = datetime(2026, 10, 14, 10, 0, tzinfo=UTC)

TWOCHECK_ENV_VARS = [
    "TWOCHECK_CONFIG_DIR",
    "TWOCHECK_TIMEOUT_SWEEP_SECONDS",
    "TWOCHECK_DECAY_SWEEP_SECONDS",
    "TWOCHECK_LEDGER_URL",
    "TWOCHECK_LEDGER_TOKEN",
    "TWOCHECK_LEDGER_TIMEOUT",
    "TWOCHECK_LOG_LEVEL",
    "TWOCHECK_LOG_FORMAT",
    "TWOCHECK_LOG_FILE",
]


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


# ============================================================================
# Environment isolation
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Strip TWOCHECK_ variables and reset the lazy settings/config globals."""
    for var in TWOCHECK_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    clear_settings_cache()
    clear_protocol_config_cache()
    yield
    clear_settings_cache()
    clear_protocol_config_cache()


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def protocol_config():
    """The packaged default protocol documents."""
    return load_protocol_config()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def notifier() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture
def ledger() -> InMemoryLedgerClient:
    return InMemoryLedgerClient()


@pytest.fixture
def scheduler():
    scheduler = DeadlineScheduler()
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def orchestrator(protocol_config, ledger, notifier, clock, scheduler):
    """A fully wired orchestrator on the frozen clock."""
    orchestrator = Orchestrator(
        config=protocol_config,
        ledger=ledger,
        notifier=notifier,
        clock=clock,
        settings=CoreSettings(),
        scheduler=scheduler,
    )
    yield orchestrator
    orchestrator.shutdown()
