"""
Tests for the lock-hold state machine.
"""
import random
import threading
import time

import pytest

from lock_errors import ConfigParseError, DatabaseCloseError, DatabaseOpenError, EXIT_FAILURE
from notmuch_config import Configuration
from orchestrator import MAX_UWAIT, MIN_UWAIT, Orchestrator, ResultSlot, State, random_hold_us


class RecordingBackend:
    """In-memory backend that records when the handle was opened and closed."""

    name = "recording"

    def __init__(self, fail_open=False, fail_close=False):
        self.fail_open = fail_open
        self.fail_close = fail_close
        self.opened = []
        self.closed = []
        self.open_at = None
        self.close_at = None

    def open(self, db_path):
        if self.fail_open:
            raise DatabaseOpenError(f"Database `{db_path}' is already locked")
        self.opened.append(db_path)
        self.open_at = time.monotonic()
        return object()

    def close(self, handle):
        self.closed.append(handle)
        self.close_at = time.monotonic()
        if self.fail_close:
            raise OSError("close failed")


def fixed_config(path="/tmp/db"):
    def resolve(environ=None, verbose=True):
        return Configuration(database_path=path)
    return resolve


def make(command, hold_us, backend, resolve=None):
    return Orchestrator(
        command,
        hold_us,
        backend=backend,
        resolve_config=resolve or fixed_config(),
        verbose=False,
    )


def test_forwards_child_exit_code():
    backend = RecordingBackend()
    orch = make(["sh", "-c", "exit 7"], 5000, backend)
    assert orch.run() == 7
    assert backend.opened == ["/tmp/db"]
    assert len(backend.closed) == 1
    assert orch.history == [State.INIT, State.CONFIGURED, State.LOCKED, State.RUNNING, State.DONE]


def test_true_exits_zero():
    orch = make(["true"], 5000, RecordingBackend())
    assert orch.run() == 0


def test_hold_is_a_lower_bound_when_child_is_fast():
    """A fast child does not cut the hold short."""
    backend = RecordingBackend()
    orch = make(["true"], 300000, backend)
    assert orch.run() == 0
    assert backend.close_at - backend.open_at >= 0.3
    assert orch.held_for >= 0.3


def test_waits_for_child_after_short_hold():
    """Releasing the lock early does not end the run before the child."""
    backend = RecordingBackend()
    orch = make(["sh", "-c", "sleep 0.5; exit 3"], 1000, backend)
    start = time.monotonic()
    assert orch.run() == 3
    assert time.monotonic() - start >= 0.5
    # The lock went first, well before the child finished
    assert backend.close_at - backend.open_at < 0.5
    assert len(backend.closed) == 1


def test_spawn_failure_still_holds_and_releases():
    backend = RecordingBackend()
    orch = make(["definitely-not-a-real-command-4242"], 200000, backend)
    assert orch.run() == EXIT_FAILURE
    assert orch.spawn_error is not None
    assert len(backend.closed) == 1
    assert backend.close_at - backend.open_at >= 0.2
    assert orch.state is State.DONE


def test_child_killed_by_signal_is_failure():
    orch = make(["sh", "-c", "kill -KILL $$"], 1000, RecordingBackend())
    assert orch.run() == EXIT_FAILURE


def test_config_failure_never_opens_database():
    backend = RecordingBackend()

    def broken(environ=None, verbose=True):
        raise ConfigParseError("Failed to parse `/nowhere'")

    orch = make(["true"], 1000, backend, resolve=broken)
    with pytest.raises(ConfigParseError):
        orch.run()
    assert backend.opened == []
    assert orch.history == [State.INIT, State.FAILED]


def test_database_open_failure_is_fatal():
    backend = RecordingBackend(fail_open=True)
    orch = make(["true"], 1000, backend)
    with pytest.raises(DatabaseOpenError):
        orch.run()
    assert backend.closed == []
    assert orch.history == [State.INIT, State.CONFIGURED, State.FAILED]
    assert orch.supervisor is None


@pytest.mark.parametrize("command,hold_us", [
    (["true"], 1000),
    (["true"], 200000),
    (["sh", "-c", "sleep 0.2"], 1000),
    (["definitely-not-a-real-command-4242"], 1000),
])
def test_lock_closed_exactly_once(command, hold_us):
    backend = RecordingBackend()
    make(command, hold_us, backend).run()
    assert len(backend.closed) == 1


def test_result_slot_first_writer_wins():
    slot = ResultSlot()
    assert not slot.written
    assert slot.set(4) is True
    assert slot.set(9) is False
    assert slot.value == 4


def test_result_slot_single_writer_under_threads():
    slot = ResultSlot()
    wins = []
    threads = [threading.Thread(target=lambda v=v: wins.append(slot.set(v))) for v in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert wins.count(True) == 1


def test_random_hold_range():
    rng = random.Random(1234)
    for _ in range(1000):
        assert MIN_UWAIT <= random_hold_us(rng) <= MAX_UWAIT


def test_negative_hold_rejected():
    with pytest.raises(ValueError):
        Orchestrator(["true"], -1)


def test_failed_release_still_waits_for_child():
    """A close error is reported only after the child has exited."""
    backend = RecordingBackend(fail_close=True)
    orch = make(["sh", "-c", "sleep 1; exit 7"], 1000, backend)
    start = time.monotonic()
    with pytest.raises(DatabaseCloseError) as excinfo:
        orch.run()
    assert time.monotonic() - start >= 1.0
    assert excinfo.value.stage == "database"
    assert orch.supervisor.child.finished
    assert orch.result.value == 7
    assert len(backend.closed) == 1
    assert orch.state is State.FAILED
