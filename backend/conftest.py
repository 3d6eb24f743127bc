# backend/conftest.py
import sys
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add backend root to PYTHONPATH
BACKEND_ROOT = Path(__file__).resolve().parent
if str(BACKEND_ROOT.parent) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT.parent))

from backend.core.metrics import METRICS
from backend.features.streaks.clock import DayBoundaryResolver
from backend.features.streaks.persistence import InMemoryStateStorage
from backend.features.streaks.service import StreakEngine, StreakEngineRegistry


class FakeClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return self.current


class ManualTicker:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback(self)


class ManualTickerFactory:
    """Ticker factory whose tickers fire only when a test calls ``fire``."""

    def __init__(self):
        self.tickers = []

    def __call__(self, interval, callback):
        ticker = ManualTicker(interval, callback)
        self.tickers.append(ticker)
        return ticker

    @property
    def latest(self):
        return self.tickers[-1] if self.tickers else None

    def fire(self):
        ticker = self.latest
        if ticker is not None and not ticker.cancelled:
            ticker.fire()


DAY_ONE = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(DAY_ONE)


@pytest.fixture
def tickers():
    return ManualTickerFactory()


@pytest.fixture
def storage():
    return InMemoryStateStorage()


@pytest.fixture
def make_engine(clock, tickers, storage):
    """Build engines over the shared fake clock, manual ticker and storage."""

    def factory(user_id: str = "reader-1", **overrides) -> StreakEngine:
        options = {
            "user_id": user_id,
            "storage": storage,
            "clock": clock,
            "resolver": DayBoundaryResolver("UTC"),
            "ticker_factory": tickers,
        }
        options.update(overrides)
        return StreakEngine(**options)

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def registry(clock, tickers, storage):
    return StreakEngineRegistry(
        storage,
        clock=clock,
        resolver=DayBoundaryResolver("UTC"),
        ticker_factory=tickers,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
