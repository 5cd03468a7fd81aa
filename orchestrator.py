"""
Sequence config lookup, lock acquisition, the child and the timed release.

    INIT -> CONFIGURED -> LOCKED -> RUNNING -> DONE
     |          |           |          |
     +----------+-----------+----------+--> FAILED

Once RUNNING, two things are pending at the same time: the child (spawned
first) and a one-shot timer that releases the lock after the hold duration.
The run ends when both the child's exit has been observed and the lock has
been released, so a short hold never hides the child's real exit status.
"""
import enum
import queue
import random
import threading
import time
from typing import Callable, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape

import notmuch_config
from child_supervisor import ChildSupervisor
from db_lock import DatabaseLock
from lock_errors import EXIT_FAILURE, NotmuchLockError, SpawnError

MIN_UWAIT = 1000  # 1 millisecond
MAX_UWAIT = 600000000  # 10 minutes

console = Console(stderr=True, soft_wrap=True)


def random_hold_us(rng: Optional[random.Random] = None) -> int:
    """Pick a hold duration in microseconds, uniform over [MIN_UWAIT, MAX_UWAIT]."""
    return (rng or random).randint(MIN_UWAIT, MAX_UWAIT)


class State(enum.Enum):
    INIT = "init"
    CONFIGURED = "configured"
    LOCKED = "locked"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class ResultSlot:
    """Holds the program's exit code. The first write wins; later ones are refused."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Optional[int] = None
        self._written = False

    def set(self, value: int) -> bool:
        with self._lock:
            if self._written:
                return False
            self._value = value
            self._written = True
            return True

    @property
    def written(self) -> bool:
        return self._written

    @property
    def value(self) -> Optional[int]:
        return self._value


class Orchestrator:
    """Runs one lock-hold session from config lookup to the child's exit."""

    def __init__(
        self,
        command: Sequence[str],
        hold_us: int,
        backend=None,
        resolve_config: Optional[Callable[..., notmuch_config.Configuration]] = None,
        environ=None,
        verbose: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            command: argv of the command to run while the lock is held
            hold_us: How long to hold the lock, in microseconds
            backend: Lock backend passed to DatabaseLock (default: libnotmuch)
            resolve_config: Replacement for notmuch_config.resolve
            environ: Environment used for config lookup (default: os.environ)
            verbose: Whether to print progress messages
        """
        if hold_us < 0:
            raise ValueError("hold duration must not be negative")
        self.command = list(command)
        self.hold_us = hold_us
        self.backend = backend
        self.resolve_config = resolve_config or notmuch_config.resolve
        self.environ = environ
        self.verbose = verbose

        self.state = State.INIT
        self.history: List[State] = [State.INIT]
        self.config: Optional[notmuch_config.Configuration] = None
        self.lock: Optional[DatabaseLock] = None
        self.supervisor: Optional[ChildSupervisor] = None
        self.result = ResultSlot()
        self.spawn_error: Optional[SpawnError] = None
        self.held_for: Optional[float] = None
        self.release_error: Optional[NotmuchLockError] = None

    def _enter(self, state: State) -> None:
        self.state = state
        self.history.append(state)

    def run(self) -> int:
        """
        Run the whole session.

        Returns:
            The child's exit code, or EXIT_FAILURE if it did not exit normally
            or could not be spawned

        Raises:
            NotmuchLockError: for fatal config and database errors; the lock
                is never left open. A failed release is raised only after
                the child has exited.
        """
        try:
            self.config = self.resolve_config(environ=self.environ, verbose=self.verbose)
        except NotmuchLockError:
            self._enter(State.FAILED)
            raise
        self._enter(State.CONFIGURED)

        self.lock = DatabaseLock(self.config.database_path, backend=self.backend, verbose=self.verbose)
        try:
            self.lock.acquire()
        except NotmuchLockError:
            self._enter(State.FAILED)
            raise
        self._enter(State.LOCKED)

        try:
            return self._run_locked()
        except BaseException:
            if self.state is not State.DONE:
                self._enter(State.FAILED)
            raise
        finally:
            # No-op when the hold timer already released it
            self.lock.release()

    def _run_locked(self) -> int:
        events: queue.Queue = queue.Queue()
        self.supervisor = ChildSupervisor(events, verbose=self.verbose)
        self._enter(State.RUNNING)

        # Spawn is issued before the timer is armed
        child_done = False
        try:
            self.supervisor.spawn(self.command)
        except SpawnError as e:
            self.spawn_error = e
            console.print(f"[yellow]⚠ {escape(str(e))}; holding the lock anyway[/yellow]")
            self.result.set(EXIT_FAILURE)
            child_done = True

        hold_seconds = self.hold_us / (1000 * 1000)
        if self.verbose:
            console.print(f"[cyan]Sleeping for {hold_seconds:f} secs[/cyan]")
        timer = threading.Timer(hold_seconds, self._release_after_hold, args=(events, time.monotonic()))
        timer.daemon = True
        timer.start()

        released = False
        try:
            while not (child_done and released):
                event = events.get()
                status = event.get("status")
                if status == "released":
                    released = True
                elif status == "exited":
                    child_done = True
                    child = event["child"]
                    code = child.exit_code if child.exit_code is not None else EXIT_FAILURE
                    self.result.set(code)
                elif status == "error":
                    # The handle is gone either way; still wait for the child
                    self.release_error = event["error"]
                    released = True
        finally:
            timer.cancel()

        if self.release_error is not None:
            raise self.release_error

        self._enter(State.DONE)
        return self.result.value

    def _release_after_hold(self, events: queue.Queue, armed_at: float) -> None:
        # Timer waits are best effort; top up so the hold is a true lower bound
        remaining = self.hold_us / (1000 * 1000) - (time.monotonic() - armed_at)
        if remaining > 0:
            time.sleep(remaining)
        self.held_for = time.monotonic() - armed_at
        try:
            self.lock.release()
        except NotmuchLockError as e:
            events.put({"status": "error", "error": e})
            return
        events.put({"status": "released"})
