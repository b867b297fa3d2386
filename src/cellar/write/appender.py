"""➕ Appender Helper - Write records and append them to a table in one call."""

from __future__ import annotations

from typing import Any

from pyiceberg.manifest import DataFile, FileFormat
from pyiceberg.table import Table
from pyiceberg.table.refs import MAIN_BRANCH
from pyiceberg.table.snapshots import Snapshot

from cellar.config import CommitRetryConfig
from cellar.table import new_append
from cellar.write.builder import FileMetadataBuilder, Records


class AppenderHelper:
    """Convenience wrapper over ``FileMetadataBuilder`` and ``CommitCoordinator``.

    Example:
        helper = AppenderHelper(table)
        helper.append_to_table([{"id": 1, "region": "eu"}], partition=("eu",))

        exp = helper.write_file(records)
        helper.append_files(exp, branch="exp")
    """

    def __init__(
        self,
        table: Table,
        file_format: FileFormat | str = FileFormat.PARQUET,
        properties: dict[str, str] | None = None,
        retry: CommitRetryConfig | None = None,
    ):
        self.table = table
        self.builder = FileMetadataBuilder(table, file_format, properties)
        self.retry = retry

    def write_file(self, records: Records, partition: Any = None) -> DataFile:
        return self.builder.write_file(partition, records)

    def append_to_table(
        self,
        records: Records,
        partition: Any = None,
        branch: str | None = None,
    ) -> Snapshot:
        """Write one file and append it to ``branch`` (default: main)."""
        return self.append_files(self.write_file(records, partition), branch=branch)

    def append_files(self, *files: DataFile, branch: str | None = None) -> Snapshot:
        return new_append(self.table, retry=self.retry).append(list(files), branch=branch or MAIN_BRANCH)
