"""
Hold the notmuch database open in write mode, which is the lock under test.
"""
import fcntl
import os
import threading
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from lock_errors import DatabaseCloseError, DatabaseOpenError, NotmuchLockError

console = Console(stderr=True, soft_wrap=True)


class NotmuchBackend:
    """Opens the database through libnotmuch; Xapian's write lock is the lock."""

    name = "notmuch"

    def open(self, db_path: str):
        # Imported here so the flock backend works without libnotmuch
        try:
            import notmuch2
        except ImportError as e:
            raise DatabaseOpenError(f"notmuch2 bindings are not available: {e}") from e

        try:
            return notmuch2.Database(db_path, mode=notmuch2.Database.MODE.READ_WRITE)
        except (notmuch2.NotmuchError, OSError) as e:
            raise DatabaseOpenError(f"Failed to open `{db_path}' read-write: {e}") from e

    def close(self, handle) -> None:
        import notmuch2

        try:
            handle.close()
        except notmuch2.NotmuchError as e:
            raise DatabaseCloseError(f"Failed to close database: {e}") from e


class FlockBackend:
    """Exclusive flock on a file inside the database directory."""

    name = "flock"
    LOCK_NAME = os.path.join(".notmuch", ".lock")

    def lock_file_path(self, db_path: str) -> Path:
        return Path(db_path) / self.LOCK_NAME

    def open(self, db_path: str):
        if not Path(db_path).is_dir():
            raise DatabaseOpenError(f"Database path `{db_path}' is not a directory")

        lock_path = self.lock_file_path(db_path)
        try:
            lock_path.parent.mkdir(exist_ok=True)
            lock_file = open(lock_path, 'w')
        except OSError as e:
            raise DatabaseOpenError(f"Cannot open lock file `{lock_path}': {e}") from e

        try:
            # Never wait: a held lock is a failure, not something to queue for
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            lock_file.close()
            raise DatabaseOpenError(f"Database `{db_path}' is already locked") from e
        except OSError as e:
            lock_file.close()
            raise DatabaseOpenError(f"Cannot lock `{lock_path}': {e}") from e
        return lock_file

    def close(self, handle) -> None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


BACKENDS = {
    NotmuchBackend.name: NotmuchBackend,
    FlockBackend.name: FlockBackend,
}


def get_backend(name: str):
    """Return a backend instance by name."""
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown lock backend: {name!r}") from None


class DatabaseLock:
    """Exclusive write handle on the notmuch database."""

    def __init__(self, db_path: str, backend=None, verbose: bool = True):
        """
        Initialize the database lock.

        Args:
            db_path: Path to the notmuch database directory
            backend: Object with open(path) and close(handle); defaults to libnotmuch
            verbose: Whether to print status messages
        """
        self.db_path = str(db_path)
        self.backend = backend if backend is not None else NotmuchBackend()
        self.verbose = verbose
        self.handle = None
        self.close_count = 0
        self._gate = threading.Lock()

    @property
    def is_held(self) -> bool:
        return self.handle is not None

    def acquire(self) -> None:
        """
        Open the database in exclusive write mode.

        Raises:
            DatabaseOpenError: if the database cannot be opened; never retried
        """
        if self.handle is not None:
            raise DatabaseOpenError(f"Database `{self.db_path}' is already held by this process")

        if self.verbose:
            console.print(f"[cyan]Opening notmuch database `{escape(self.db_path)}'[/cyan]")
        self.handle = self.backend.open(self.db_path)
        if self.verbose:
            console.print("[green]✓ Database lock acquired[/green]")

    def release(self) -> bool:
        """
        Close the handle and drop the lock.

        Safe to call from any thread and any number of times; only the first
        call after acquire() closes anything.

        Returns:
            True if this call closed the handle
        """
        with self._gate:
            handle, self.handle = self.handle, None
            if handle is None:
                return False
            self.close_count += 1

        try:
            self.backend.close(handle)
        except NotmuchLockError:
            raise
        except Exception as e:
            raise DatabaseCloseError(f"Failed to release `{self.db_path}': {e}") from e
        if self.verbose:
            console.print("[green]✓ Database lock released[/green]")
        return True

    def __enter__(self):
        """Context manager entry."""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.release()
        return False
