"""Shared test helpers and fixtures."""

import itertools
import os

# The server module reads its configuration at import time.
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['ADMIN_PASSWORD'] = 'test-admin'
os.environ['GEMINI_API_KEY'] = ''

import pytest

from artscore.store import MemoryStore
from artscore.sync import Judge, Performance, Score, SyncClient


def make_performances(*ids: str) -> list[Performance]:
    """Performances named after their ids, ordered as given."""
    return [Performance(id=pid, name=pid.upper(), performer=f"Group {pid}", order=n)
            for n, pid in enumerate(ids, 1)]


def make_judges(*ids: str) -> list[Judge]:
    return [Judge(id=jid, name=jid.upper(), access_code=str(1000 + n)) for n, jid in enumerate(ids, 1)]


def make_scores(table: list[tuple[str, str, float]]) -> list[Score]:
    """Build scores from ``(judge_id, performance_id, value)`` rows."""
    return [Score(performance_id=pid, judge_id=jid, value=value, timestamp=n)
            for n, (jid, pid, value) in enumerate(table, 1)]


def ranking_ids(rows) -> list[str]:
    return [row.performance.id for row in rows]


class FakeTimer:
    """Stand-in for ``threading.Timer`` that only fires when told to."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.started = False
        self.cancelled = False
        self.daemon = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


@pytest.fixture
def fake_timers():
    FakeTimer.created = []
    return FakeTimer


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sync_client(store):
    ids = (f"id{n}" for n in itertools.count(1))
    codes = (str(n) for n in itertools.count(4821))
    return SyncClient(store, id_factory=lambda: next(ids), code_factory=lambda: next(codes),
                      clock=lambda: 1700000000000).start()
