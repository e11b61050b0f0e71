"""Tests for pool.py -- bounded concurrency over a lazy producer."""

import itertools
import threading
import time

import pytest

from audiobook_assembler.errors import ValidationError
from audiobook_assembler.models import UnitStatus, WorkUnit
from audiobook_assembler.pool import run_pool


class _Tracker:
    """Counts units running at the same time."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0

    def unit(self, name: str, delay: float = 0.005, fail: bool = False) -> WorkUnit:
        def _run():
            with self.lock:
                self.running += 1
                self.peak = max(self.peak, self.running)
            try:
                time.sleep(delay)
                if fail:
                    raise RuntimeError(f"{name} broke")
                return name
            finally:
                with self.lock:
                    self.running -= 1

        return WorkUnit(name, _run)


class TestLimits:
    @pytest.mark.parametrize("limit", [1, 2, 4])
    @pytest.mark.parametrize("count", [0, 1, 7, 20])
    def test_never_exceeds_limit(self, limit, count):
        tracker = _Tracker()
        result = run_pool((tracker.unit(f"u{i}") for i in range(count)), limit)
        assert len(result.outcomes) == count
        assert tracker.peak <= limit
        assert result.peak_in_flight <= limit

    def test_fills_available_slots(self):
        tracker = _Tracker()
        result = run_pool((tracker.unit(f"u{i}", delay=0.05) for i in range(6)), 3)
        assert result.peak_in_flight == 3

    @pytest.mark.parametrize("limit", [0, -1])
    def test_non_positive_limit_rejected(self, limit):
        with pytest.raises(ValidationError, match="positive integer"):
            run_pool([], limit)

    def test_bool_limit_rejected(self):
        with pytest.raises(ValidationError):
            run_pool([], True)


class TestProducer:
    def test_empty_producer(self):
        result = run_pool(iter([]), 4)
        assert result.outcomes == []
        assert result.peak_in_flight == 0
        assert result.cancelled is False

    def test_consumes_lazily(self):
        lock = threading.Lock()
        pulled = 0
        finished = 0
        seen_ahead = []

        def _work():
            nonlocal finished
            with lock:
                seen_ahead.append(pulled - finished)
            time.sleep(0.002)
            with lock:
                finished += 1

        def producer():
            nonlocal pulled
            for i in range(30):
                with lock:
                    pulled += 1
                yield WorkUnit(f"u{i}", _work)

        run_pool(producer(), 2)
        assert max(seen_ahead) <= 2

    def test_admission_follows_producer_order(self):
        started = []
        units = (WorkUnit(f"u{i}", lambda i=i: started.append(i)) for i in range(10))
        result = run_pool(units, 1)
        assert started == list(range(10))
        assert [o.name for o in result.outcomes] == [f"u{i}" for i in range(10)]

    def test_unbounded_producer_stopped_by_cancel(self):
        cancel = threading.Event()
        lock = threading.Lock()
        done = 0

        def _work():
            nonlocal done
            with lock:
                done += 1
                if done >= 5:
                    cancel.set()

        units = (WorkUnit(f"u{i}", _work) for i in itertools.count())
        result = run_pool(units, 3, cancel=cancel)
        assert result.cancelled is True
        # in-flight units finish, nothing past the limit gets admitted after cancel
        assert 5 <= len(result.outcomes) <= 5 + 3


class TestFailures:
    def test_failure_does_not_stop_admission(self):
        tracker = _Tracker()
        units = [
            tracker.unit("a"),
            tracker.unit("b", fail=True),
            tracker.unit("c"),
            tracker.unit("d", fail=True),
            tracker.unit("e"),
        ]
        result = run_pool(iter(units), 2)
        assert len(result.outcomes) == 5
        assert sorted(o.name for o in result.succeeded) == ["a", "c", "e"]
        assert sorted(o.name for o in result.failed) == ["b", "d"]

    def test_failed_outcome_keeps_error(self):
        def _boom():
            raise ValueError("bad input")

        result = run_pool([WorkUnit("x", _boom)], 1)
        (outcome,) = result.outcomes
        assert outcome.status == UnitStatus.FAILED
        assert isinstance(outcome.error, ValueError)
        assert outcome.ok is False

    def test_success_keeps_value(self):
        result = run_pool([WorkUnit("x", lambda: 42)], 1)
        (outcome,) = result.outcomes
        assert outcome.ok
        assert outcome.value == 42
