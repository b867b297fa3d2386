"""🔁 Commit - Snapshot creation with optimistic concurrency."""

from .coordinator import CommitCoordinator

__all__ = ["CommitCoordinator"]
