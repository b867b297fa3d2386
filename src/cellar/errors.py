"""🚨 Errors - Exception hierarchy for catalog, table, write and commit failures."""

from __future__ import annotations


class CellarError(Exception):
    """Base exception for cellar operations."""

    pass


class CatalogConnectionError(CellarError):
    """Catalog backend is unreachable or its configuration is invalid."""

    pass


class TableNotFoundError(CellarError):
    """Table does not exist in the catalog or at the given location."""

    pass


class TableAlreadyExistsError(CellarError):
    """Table already exists."""

    pass


class NotOpenError(CellarError):
    """A TableLoader was used before open() or after close()."""

    pass


class IOInitializationError(CellarError):
    """Storage I/O for a table could not be initialized."""

    pass


class WriteError(CellarError):
    """A format writer failed mid-file.

    The partially written file is never referenced by a descriptor; the
    record batch must be rewritten from scratch.
    """

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class CommitConflictError(CellarError):
    """Optimistic concurrency retries were exhausted."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class IndeterminateCommitError(CellarError):
    """The compare-and-swap exchange itself failed.

    The commit may or may not have been applied; refresh the table metadata
    to find out. ``base_location`` is the metadata the commit was built on.
    """

    def __init__(self, message: str, base_location: str | None = None):
        super().__init__(message)
        self.base_location = base_location
