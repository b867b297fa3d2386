"""🧊 Table Helpers - Read-side views over a live PyIceberg table.

The table itself is PyIceberg's ``Table``: a refreshable view whose metadata
is whatever was current the last time it was loaded, refreshed, or committed
through.

Example:
    table = catalog.load_table("db.sales")
    history(table)
    data_files(table, ref="audit")
    new_append(table).append(files)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pandas as pd
from pyiceberg.manifest import DataFile
from pyiceberg.table import Table
from pyiceberg.table.refs import MAIN_BRANCH

if TYPE_CHECKING:
    from cellar.commit.coordinator import CommitCoordinator
    from cellar.config import CommitRetryConfig


def table_name(table: Table) -> str:
    """Catalog identifier, or the location for direct-path tables."""
    return ".".join(table.name())


def _summary_int(snapshot, key: str) -> int | None:
    if snapshot.summary is None or key not in snapshot.summary:
        return None
    return int(snapshot.summary[key])


def history(table: Table) -> pd.DataFrame:
    """Snapshot history, oldest first.

    Returns:
        DataFrame with snapshot_id, parent_id, timestamp, operation,
        added_records, total_records and the refs pointing at each row
    """
    refs_by_snapshot: dict[int, list[str]] = {}
    for ref_name, ref in table.refs().items():
        refs_by_snapshot.setdefault(ref.snapshot_id, []).append(ref_name)

    snapshots = sorted(table.metadata.snapshots, key=lambda s: (s.sequence_number or 0, s.timestamp_ms))
    # Nullable Int64 keeps 63-bit ids exact next to a missing parent
    return pd.DataFrame(
        {
            "snapshot_id": pd.array([s.snapshot_id for s in snapshots], dtype="Int64"),
            "parent_id": pd.array([s.parent_snapshot_id for s in snapshots], dtype="Int64"),
            "timestamp": pd.to_datetime([s.timestamp_ms for s in snapshots], unit="ms"),
            "operation": [s.summary.operation.value if s.summary is not None else None for s in snapshots],
            "added_records": pd.array([_summary_int(s, "added-records") for s in snapshots], dtype="Int64"),
            "total_records": pd.array([_summary_int(s, "total-records") for s in snapshots], dtype="Int64"),
            "refs": [sorted(refs_by_snapshot.get(s.snapshot_id, [])) for s in snapshots],
        }
    )


def data_files(table: Table, ref: str = MAIN_BRANCH) -> list[DataFile]:
    """Live data files visible at a ref."""
    snapshot = table.snapshot_by_name(ref)
    if snapshot is None:
        return []
    return [
        entry.data_file
        for manifest in snapshot.manifests(table.io)
        for entry in manifest.fetch_manifest_entry(table.io, discard_deleted=True)
    ]


def new_append(table: Table, retry: CommitRetryConfig | None = None) -> CommitCoordinator:
    from cellar.commit.coordinator import CommitCoordinator

    return CommitCoordinator(table, retry=retry)
