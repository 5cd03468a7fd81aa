"""
Exceptions raised while holding the notmuch database lock.
"""

# Same value as C's EXIT_FAILURE; returned for every failure of our own.
EXIT_FAILURE = 1


class NotmuchLockError(Exception):
    """Base class for all notmuch-lock failures."""

    stage = "notmuch-lock"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{self.stage}: {self.message}"


class UsageError(NotmuchLockError):
    """Bad or missing command-line arguments."""

    stage = "usage"


class ConfigLocationError(NotmuchLockError):
    """Neither NOTMUCH_CONFIG nor HOME is set."""

    stage = "config"


class ConfigParseError(NotmuchLockError):
    """The config file is missing or is not a valid key file."""

    stage = "config"


class ConfigFieldError(NotmuchLockError):
    """A required key is absent from the config file."""

    stage = "config"


class DatabaseOpenError(NotmuchLockError):
    """The database could not be opened in exclusive write mode."""

    stage = "database"


class SpawnError(NotmuchLockError):
    """The child command could not be started. Not fatal."""

    stage = "spawn"


class DatabaseCloseError(NotmuchLockError):
    """Closing the database handle failed. The handle is dropped either way."""

    stage = "database"
