"""
Run the command under test as a child process and report how it ended.
"""
import queue
import subprocess
import threading
from typing import List, Optional, Sequence

from rich.console import Console
from rich.markup import escape

from lock_errors import SpawnError

console = Console(stderr=True, soft_wrap=True)


class ChildProcess:
    """A spawned command. pid is only meaningful until the exit is observed."""

    def __init__(self, argv: Sequence[str], pid: int):
        self.argv: List[str] = list(argv)
        self.pid: Optional[int] = pid
        self.returncode: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.returncode is not None

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code for a normal exit, None if still running or killed by a signal."""
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is None or self.returncode >= 0:
            return None
        return -self.returncode

    def describe(self) -> str:
        if self.returncode is None:
            return "running"
        if self.signal is not None:
            return f"killed by signal {self.signal}"
        return f"exited with status {self.returncode}"


class ChildSupervisor:
    """Spawns one child and watches it from a background thread."""

    def __init__(self, events: Optional[queue.Queue] = None, verbose: bool = True):
        """
        Initialize the supervisor.

        Args:
            events: Queue that receives {"status": "exited", "child": ...} once
                the child has been reaped
            verbose: Whether to print status messages
        """
        self.events = events if events is not None else queue.Queue()
        self.verbose = verbose
        self.child: Optional[ChildProcess] = None
        self._process: Optional[subprocess.Popen] = None
        self._watcher: Optional[threading.Thread] = None

    def spawn(self, argv: Sequence[str]) -> ChildProcess:
        """
        Start argv, searching PATH, with our stdin inherited.

        Raises:
            SpawnError: if the command cannot be started
        """
        if self._process is not None:
            raise SpawnError("a child has already been spawned")
        if not argv:
            raise SpawnError("empty command")

        try:
            # stdin/stdout/stderr default to ours
            self._process = subprocess.Popen(list(argv))
        except (OSError, ValueError) as e:
            raise SpawnError(f"failed to spawn `{argv[0]}': {e}") from e

        self.child = ChildProcess(argv, self._process.pid)
        if self.verbose:
            console.print(
                f"[green]✓ Spawned child {self.child.pid}:[/green] {escape(' '.join(self.child.argv))}"
            )

        self._watcher = threading.Thread(
            target=self._watch, name=f"child-{self.child.pid}", daemon=True
        )
        self._watcher.start()
        return self.child

    def _watch(self) -> None:
        returncode = self._process.wait()
        child = self.child
        child.returncode = returncode
        child.pid = None  # reaped; the OS may hand the pid to someone else
        if self.verbose:
            style = "yellow" if child.signal is not None else "cyan"
            console.print(f"[{style}]Child {escape(child.argv[0])} {child.describe()}[/{style}]")
        self.events.put({"status": "exited", "child": child})

    def is_running(self) -> bool:
        return self.child is not None and not self.child.finished

    def wait(self, timeout: Optional[float] = None) -> Optional[ChildProcess]:
        """
        Block until the child has been reaped.

        Returns:
            The finished child, or None if nothing was spawned or the timeout hit
        """
        if self._watcher is None:
            return None
        self._watcher.join(timeout)
        if self._watcher.is_alive():
            return None
        return self.child
