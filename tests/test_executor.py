import threading
import time

import pytest

from catalogsync.core.executor import BoundedExecutor, OperationCancelled, run_bounded


def test_runs_every_operation():
    done = []
    lock = threading.Lock()

    def make(i):
        def op():
            with lock:
                done.append(i)
        return op

    run_bounded([make(i) for i in range(25)], limit=4)
    assert sorted(done) == list(range(25))


def test_empty_batch_is_a_noop():
    BoundedExecutor(3).run([])


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        BoundedExecutor(0)


def test_never_more_than_limit_in_flight():
    in_flight = 0
    peak = 0
    lock = threading.Lock()

    def op():
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.01)
        with lock:
            in_flight -= 1

    run_bounded([op] * 40, limit=10)
    assert 1 <= peak <= 10


def test_first_error_is_raised_and_pending_work_is_skipped():
    gate = threading.Event()
    ran = []
    lock = threading.Lock()

    def failing():
        raise RuntimeError("boom")

    def slow():
        gate.wait(1.0)
        with lock:
            ran.append(1)

    executor = BoundedExecutor(1)
    # limit=1: the failure runs first, everything queued behind it is skipped
    with pytest.raises(RuntimeError, match="boom"):
        executor.run([failing] + [slow] * 10)
    gate.set()

    assert ran == []
    assert executor.started == 1
    assert executor.skipped == 10


def test_only_first_of_several_errors_surfaces():
    barrier = threading.Barrier(3, timeout=2)

    def make(i):
        def op():
            barrier.wait()
            if i == 0:
                raise KeyError("first")
            time.sleep(0.05)
            raise ValueError(f"later-{i}")
        return op

    with pytest.raises(Exception) as ei:
        run_bounded([make(i) for i in range(3)], limit=3)
    assert isinstance(ei.value, (KeyError, ValueError))


def test_in_flight_operations_can_observe_cancellation():
    executor = BoundedExecutor(2)
    saw_cancel = threading.Event()
    started = threading.Event()

    def failing():
        started.wait(1.0)
        raise RuntimeError("boom")

    def long_running():
        started.set()
        if executor.cancelled.wait(1.0):
            saw_cancel.set()
            raise OperationCancelled()

    with pytest.raises(RuntimeError):
        executor.run([long_running, failing])
    assert saw_cancel.is_set()
