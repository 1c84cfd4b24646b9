import threading
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone

import pytest

from labverify.database import build_engine, build_session_factory, init_db
from labverify.escalation.router import EscalationRouter
from labverify.models.domain import ResultValue
from labverify.services.repository import SqlAlchemyStore

BASE_TIME = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """Collects every intent handed to it"""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, intent):
        with self._lock:
            self.sent.append(intent)


class ImmediateExecutor(Executor):
    """Runs submitted work inline so tests can assert on delivery right away"""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeClock:
    def __init__(self, start=BASE_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_result(value, result_id="R1", test_id="GLU", patient_id="P1", timestamp=None,
                instrument_id="INST1", corrects=None):
    return ResultValue(
        result_id=result_id,
        test_id=test_id,
        patient_id=patient_id,
        sample_id=f"S-{result_id}",
        instrument_id=instrument_id,
        value=value,
        unit="mg/dL",
        timestamp=timestamp or BASE_TIME,
        corrects=corrects,
    )


@pytest.fixture
def store():
    """Store backed by a fresh in-memory SQLite database"""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield SqlAlchemyStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router(notifier, clock):
    return EscalationRouter(notifier, executor=ImmediateExecutor(), clock=clock)
