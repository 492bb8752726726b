import sys
from pathlib import Path

import pytest

# Make the flat top-level modules (app, candles, errors, ingestion, ...) importable
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from ingestion.database import TickStore  # noqa: E402


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(self.now * 1000)


@pytest.fixture
def store(tmp_path):
    s = TickStore(tmp_path / "ticks.db")
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()
