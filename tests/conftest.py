"""Shared fixtures for the session prediction tests.

Reference week: Monday 2026-10-12 in America/Chicago. All engine calls in the
tests pass the zone explicitly so results do not depend on SESSION_TZ.
"""

from datetime import datetime, timedelta
from typing import List

import pytest
import pytz

from session_predictor import SessionRecord

CHICAGO = pytz.timezone("America/Chicago")


def local(year, month, day, hour=0, minute=0):
    return CHICAGO.localize(datetime(year, month, day, hour, minute))


def completed(start: datetime, minutes: int = 5) -> SessionRecord:
    return SessionRecord(started_at=start, ended_at=start + timedelta(minutes=minutes))


def pending(start: datetime) -> SessionRecord:
    return SessionRecord(started_at=start, ended_at=None)


def weekly(start: datetime, weeks: int) -> List[SessionRecord]:
    """One completed session per week at the same wall-clock time, newest first."""
    sessions = []
    for offset in range(weeks):
        naive = start.replace(tzinfo=None) - timedelta(weeks=offset)
        sessions.append(completed(CHICAGO.localize(naive)))
    return sessions


@pytest.fixture
def tz():
    return CHICAGO


@pytest.fixture
def monday_morning() -> datetime:
    return local(2026, 10, 12, 7, 0)


@pytest.fixture
def monday_habit(monday_morning) -> List[SessionRecord]:
    """Ten Mondays at 07:00, the latest one today."""
    return weekly(monday_morning, 10)


class FakeCursor:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.executed = []
        self.executed_many = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def executemany(self, sql, seq):
        self.executed_many.append((sql, list(seq)))

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None):
        self.cursor_obj = FakeCursor(rows)
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def close(self):
        self.closed = True


@pytest.fixture
def fake_conn_factory():
    return FakeConnection
