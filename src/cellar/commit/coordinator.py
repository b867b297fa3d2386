"""🔁 Commit Coordinator - Atomic appends with optimistic concurrency.

Every attempt starts from scratch: refresh the table metadata, write a
fresh manifest and manifest list, build the new snapshot, and ask the
catalog to apply it only if the table's refs are still where this attempt
found them. If another writer got there first the attempt's files are
deleted and the whole thing is rerun after a backoff, up to the configured
bound.

Retry policy (table properties, overridable with ``CommitRetryConfig``)::

    commit.retry.num-retries       4
    commit.retry.min-wait-ms       100
    commit.retry.max-wait-ms       60000
    commit.retry.total-timeout-ms  1800000
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable

import tenacity
from pyiceberg.exceptions import CommitFailedException, CommitStateUnknownException
from pyiceberg.manifest import (
    DataFile,
    ManifestEntry,
    ManifestEntryStatus,
    ManifestFile,
    write_manifest,
    write_manifest_list,
)
from pyiceberg.table import Table, TableProperties
from pyiceberg.table.metadata import TableMetadata
from pyiceberg.table.refs import MAIN_BRANCH, SnapshotRefType
from pyiceberg.table.snapshots import (
    Operation,
    Snapshot,
    SnapshotSummaryCollector,
    Summary,
    update_snapshot_summaries,
)
from pyiceberg.table.update import (
    AddSnapshotUpdate,
    AssertRefSnapshotId,
    AssertTableUUID,
    SetSnapshotRefUpdate,
    TableRequirement,
    TableUpdate,
)

from cellar.config import CommitRetryConfig
from cellar.errors import CommitConflictError, IndeterminateCommitError
from cellar.table import table_name

logger = logging.getLogger(__name__)


def _requirements(base: TableMetadata, branch: str) -> tuple[TableRequirement, ...]:
    """Hold every ref of ``base`` in place, and ``branch`` absent if it is new."""
    requirements: list[TableRequirement] = [AssertTableUUID(uuid=base.table_uuid)]
    requirements.extend(
        AssertRefSnapshotId(ref=name, snapshot_id=ref.snapshot_id) for name, ref in sorted(base.refs.items())
    )
    if branch not in base.refs:
        requirements.append(AssertRefSnapshotId(ref=branch, snapshot_id=None))
    return tuple(requirements)


class CommitCoordinator:
    """Commits data files to a table branch as one new snapshot.

    Commits through one coordinator are serialized; across coordinators,
    threads and processes the catalog's compare-and-swap decides who wins.

    Example:
        coordinator = CommitCoordinator(table)
        snapshot = coordinator.append([data_file_1, data_file_2])
        coordinator.append([data_file_3], branch="exp")
    """

    def __init__(self, table: Table, retry: CommitRetryConfig | None = None):
        self.table = table
        self.retry = retry or CommitRetryConfig.from_properties(table.properties)
        self._lock = threading.Lock()

    def append(
        self,
        files: Iterable[DataFile],
        branch: str = MAIN_BRANCH,
        snapshot_properties: dict[str, str] | None = None,
    ) -> Snapshot:
        """Add files to ``branch`` on top of its current snapshot.

        Args:
            files: Descriptors of already-written data files
            branch: Target branch; created from main's snapshot if missing
            snapshot_properties: Extra entries for the snapshot summary

        Returns:
            The committed snapshot

        Raises:
            CommitConflictError: If every attempt lost the race
            IndeterminateCommitError: If the outcome of the swap is unknown
            IOInitializationError: If a direct-path table sits on storage
                without atomic create
            ValueError: If there are no files, ``branch`` is a tag, or a new
                branch is requested on a table without snapshots
        """
        return self._commit(Operation.APPEND, files, branch, snapshot_properties)

    def overwrite(
        self,
        files: Iterable[DataFile],
        branch: str = MAIN_BRANCH,
        snapshot_properties: dict[str, str] | None = None,
    ) -> Snapshot:
        """Replace every file visible on ``branch`` with ``files``."""
        return self._commit(Operation.OVERWRITE, files, branch, snapshot_properties)

    def _commit(
        self,
        operation: Operation,
        files: Iterable[DataFile],
        branch: str,
        snapshot_properties: dict[str, str] | None,
    ) -> Snapshot:
        files = list(files)
        if not files:
            raise ValueError("Nothing to commit: no data files given")

        commit_uuid = uuid.uuid4()
        attempts = 0
        with self._lock:
            try:
                for attempt in self._retrying():
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        return self._attempt(
                            operation, files, branch, snapshot_properties or {}, commit_uuid, attempts
                        )
            except CommitConflictError as exc:
                raise CommitConflictError(
                    f"Commit to {table_name(self.table)}@{branch} failed after {attempts} attempts: {exc}",
                    attempts=attempts,
                ) from exc

    def _retrying(self) -> tenacity.Retrying:
        min_wait = self.retry.min_wait_ms / 1000
        max_wait = self.retry.max_wait_ms / 1000
        return tenacity.Retrying(
            stop=(
                tenacity.stop_after_attempt(self.retry.max_attempts)
                | tenacity.stop_after_delay(self.retry.total_timeout_ms / 1000)
            ),
            wait=(
                tenacity.wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait)
                + tenacity.wait_random(0, min_wait)
            ),
            retry=tenacity.retry_if_exception_type(CommitConflictError),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Commit attempt %d/%d on %s conflicted: %s. Retrying in %.2fs...",
            retry_state.attempt_number,
            self.retry.max_attempts,
            table_name(self.table),
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    # =========================================================================
    # One Attempt
    # =========================================================================

    def _attempt(
        self,
        operation: Operation,
        files: list[DataFile],
        branch: str,
        snapshot_properties: dict[str, str],
        commit_uuid: uuid.UUID,
        attempt: int,
    ) -> Snapshot:
        table = self.table.refresh()
        base = table.metadata
        base_location = table.metadata_location

        ref = base.refs.get(branch)
        if ref is not None and ref.snapshot_ref_type == SnapshotRefType.TAG:
            raise ValueError(f"Cannot commit to tag '{branch}'")
        if ref is None and branch != MAIN_BRANCH and not base.snapshots:
            raise ValueError(f"Cannot create branch '{branch}' on a table without snapshots")
        parent = base.snapshot_by_id(ref.snapshot_id) if ref else base.snapshot_by_name(MAIN_BRANCH)

        snapshot_id = base.new_snapshot_id()
        sequence_number = base.next_sequence_number()

        written: list[str] = []
        try:
            manifests = self._manifests(base, operation, files, parent, snapshot_id, commit_uuid, attempt, written)
            manifest_list = self._write_manifest_list(
                base, manifests, parent, snapshot_id, sequence_number, commit_uuid, attempt, written
            )
            snapshot = Snapshot(
                snapshot_id=snapshot_id,
                parent_snapshot_id=parent.snapshot_id if parent else None,
                sequence_number=sequence_number,
                manifest_list=manifest_list,
                summary=self._summary(base, operation, files, parent, snapshot_properties),
                schema_id=base.current_schema_id,
            )
        except Exception:
            self._cleanup(written)
            raise

        updates: tuple[TableUpdate, ...] = (
            AddSnapshotUpdate(snapshot=snapshot),
            SetSnapshotRefUpdate(ref_name=branch, type=SnapshotRefType.BRANCH, snapshot_id=snapshot_id),
        )
        try:
            response = table.catalog.commit_table(table, _requirements(base, branch), updates)
        except CommitFailedException as exc:
            self._cleanup(written)
            raise CommitConflictError(str(exc), attempts=attempt) from exc
        except CommitStateUnknownException as exc:
            raise IndeterminateCommitError(
                f"Commit of snapshot {snapshot_id} to {table_name(table)} has unknown outcome: "
                f"{exc}. Refresh the table to check whether it was applied.",
                base_location,
            ) from exc
        except ValueError as exc:
            self._cleanup(written)
            # A snapshot landed on another branch between refresh and swap
            if self._moved_past(base_location):
                raise CommitConflictError(str(exc), attempts=attempt) from exc
            raise
        except Exception:
            self._cleanup(written)
            raise

        table.metadata = response.metadata
        table.metadata_location = response.metadata_location
        logger.info(
            "Committed snapshot %d to %s@%s (%s, %d files, attempt %d)",
            snapshot_id,
            table_name(table),
            branch,
            operation.value,
            len(files),
            attempt,
        )
        return response.metadata.snapshot_by_id(snapshot_id)

    def _moved_past(self, base_location: str) -> bool:
        current = self.table.catalog.load_table(self.table.name())
        return current.metadata_location != base_location

    def _manifests(
        self,
        base: TableMetadata,
        operation: Operation,
        files: list[DataFile],
        parent: Snapshot | None,
        snapshot_id: int,
        commit_uuid: uuid.UUID,
        attempt: int,
        written: list[str],
    ) -> list[ManifestFile]:
        path = self.table.location_provider().new_metadata_location(f"{commit_uuid}-m{attempt - 1}.avro")
        written.append(path)
        with write_manifest(
            format_version=base.format_version,
            spec=base.spec(),
            schema=base.schema(),
            output_file=self.table.io.new_output(path),
            snapshot_id=snapshot_id,
            avro_compression=self._compression(base),
        ) as writer:
            for data_file in files:
                writer.add(
                    ManifestEntry.from_args(
                        status=ManifestEntryStatus.ADDED,
                        snapshot_id=snapshot_id,
                        sequence_number=None,
                        file_sequence_number=None,
                        data_file=data_file,
                    )
                )

        manifests = [writer.to_manifest_file()]
        if parent is not None and operation == Operation.APPEND:
            manifests.extend(
                manifest
                for manifest in parent.manifests(self.table.io)
                if manifest.has_added_files() or manifest.has_existing_files()
            )
        return manifests

    def _write_manifest_list(
        self,
        base: TableMetadata,
        manifests: list[ManifestFile],
        parent: Snapshot | None,
        snapshot_id: int,
        sequence_number: int,
        commit_uuid: uuid.UUID,
        attempt: int,
        written: list[str],
    ) -> str:
        path = self.table.location_provider().new_metadata_location(
            f"snap-{snapshot_id}-{attempt}-{commit_uuid}.avro"
        )
        written.append(path)
        with write_manifest_list(
            format_version=base.format_version,
            output_file=self.table.io.new_output(path),
            snapshot_id=snapshot_id,
            parent_snapshot_id=parent.snapshot_id if parent else None,
            sequence_number=sequence_number,
            avro_compression=self._compression(base),
        ) as writer:
            writer.add_manifests(manifests)
        return path

    def _summary(
        self,
        base: TableMetadata,
        operation: Operation,
        files: list[DataFile],
        parent: Snapshot | None,
        snapshot_properties: dict[str, str],
    ) -> Summary:
        schema = base.schema()
        specs = base.specs()
        collector = SnapshotSummaryCollector()
        for data_file in files:
            collector.add_file(data_file, schema=schema, partition_spec=base.spec())
        if parent is not None and operation == Operation.OVERWRITE:
            for manifest in parent.manifests(self.table.io):
                for entry in manifest.fetch_manifest_entry(self.table.io, discard_deleted=True):
                    collector.remove_file(
                        entry.data_file, schema=schema, partition_spec=specs[entry.data_file.spec_id]
                    )

        return update_snapshot_summaries(
            summary=Summary(operation=operation, **collector.build(), **snapshot_properties),
            previous_summary=parent.summary if parent is not None else None,
        )

    @staticmethod
    def _compression(base: TableMetadata) -> str:
        return base.properties.get(
            TableProperties.WRITE_AVRO_COMPRESSION, TableProperties.WRITE_AVRO_COMPRESSION_DEFAULT
        )

    def _cleanup(self, paths: list[str]) -> None:
        for path in paths:
            try:
                if self.table.io.new_input(path).exists():
                    self.table.io.delete(path)
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)
