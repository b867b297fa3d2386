"""🏗️ File Metadata Builder - Write records to a data file and describe it.

The builder turns a batch of records for one partition into one data file
under the table location and returns its PyIceberg ``DataFile`` descriptor:
path, format, partition, record count, size, split offsets and column
metrics, with bounds in Iceberg's single-value binary form. Nothing is
committed here; descriptors are handed to a ``CommitCoordinator``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq
from pyiceberg.manifest import DataFile, DataFileContent, FileFormat
from pyiceberg.partitioning import PartitionSpec, partition_record_value
from pyiceberg.table import Table
from pyiceberg.transforms import IdentityTransform
from pyiceberg.typedef import Record

from cellar.errors import WriteError
from cellar.io import file_size, join_path
from cellar.write.metrics import FileMetrics, primitive_fields, serialize_bounds
from cellar.write.writers import column_sizes, file_extension, new_writer, row_group_offsets

logger = logging.getLogger(__name__)

Records = Iterable[Mapping[str, Any]] | pa.Table | pa.RecordBatch | pd.DataFrame


def _fix_timestamp_precision(df: pd.DataFrame) -> pd.DataFrame:
    """Narrow nanosecond timestamps to microseconds, the table's precision."""
    df = df.copy()
    for col in df.columns:
        if pd.api.types.is_datetime64_any_dtype(df[col]):
            df[col] = df[col].dt.as_unit("us")
    return df


class FileMetadataBuilder:
    """Writes data files for a table and builds their descriptors.

    Format properties default to the table's own properties, overlaid with
    any passed here.

    Example:
        builder = FileMetadataBuilder(table)
        data_file = builder.write_file(("eu",), [{"id": 1, "region": "eu"}])
        new_append(table).append([data_file])
    """

    def __init__(
        self,
        table: Table,
        file_format: FileFormat | str = FileFormat.PARQUET,
        properties: dict[str, str] | None = None,
    ):
        self.table = table
        self.file_format = FileFormat(file_format)
        self.properties = {**table.properties, **(properties or {})}

    @property
    def spec(self) -> PartitionSpec:
        return self.table.spec()

    def partition_values(self, partition: Any) -> tuple[Any, ...] | None:
        """Check ``partition`` against the spec; None for an unpartitioned table.

        Raises:
            ValueError: If the arity is wrong or a field is not an identity transform
        """
        if self.spec.is_unpartitioned():
            if partition not in (None, ()):
                raise ValueError(f"Table is unpartitioned, got partition {partition!r}")
            return None

        if not isinstance(partition, tuple) or len(partition) != len(self.spec.fields):
            raise ValueError(
                f"Partition must be a tuple of {len(self.spec.fields)} values, got {partition!r}"
            )
        for partition_field in self.spec.fields:
            if not isinstance(partition_field.transform, IdentityTransform):
                raise ValueError(
                    f"Partition field {partition_field.name} uses {partition_field.transform}; "
                    "only identity partitions can be written"
                )
        return partition

    def partition_record(self, values: tuple[Any, ...] | None) -> Record:
        if values is None:
            return Record()
        schema = self.table.schema()
        return Record(
            *[partition_record_value(pf, value, schema) for pf, value in zip(self.spec.fields, values)]
        )

    def new_data_path(self, partition: Record) -> str:
        """``<location>/data/<partition path>/<uuid>.<ext>``"""
        return join_path(
            self.table.location(),
            "data",
            self.spec.partition_to_path(partition, self.table.schema()),
            f"{uuid.uuid4()}.{file_extension(self.file_format)}",
        )

    def write_file(self, partition: Any, records: Records) -> DataFile:
        """Write ``records`` to a new data file.

        Args:
            partition: Partition tuple matching the table's partition spec, or None
                for an unpartitioned table
            records: Dicts, an Arrow table/batch or a pandas DataFrame

        Returns:
            Descriptor of the written file

        Raises:
            ValueError: If the partition does not match the partition spec or the records
            WriteError: If the writer options are invalid or writing fails
        """
        values = self.partition_values(partition)

        arrow = self._as_arrow(records)
        if arrow is not None:
            self._check_arrow_partition(arrow, values)

        record = self.partition_record(values)
        path = self.new_data_path(record)
        try:
            writer = new_writer(self.file_format, self.table.io, path, self.table.schema(), self.properties)
        except (OSError, pa.ArrowException) as exc:
            raise WriteError(f"Cannot open {path} for writing: {exc}", path) from exc

        try:
            if arrow is not None:
                writer.write(arrow)
            else:
                for row in records:
                    self._check_record_partition(row, values)
                    writer.append(row)
            writer.close()
        except Exception as exc:
            writer.abort()
            raise WriteError(f"Failed writing {path}: {exc}", path) from exc

        offsets = writer.split_offsets()
        data_file = self._data_file(
            path, self.file_format, record, writer.metrics(), writer.length(), offsets
        )
        logger.debug("Built descriptor for %s (%d records)", path, data_file.record_count)
        return data_file

    def describe_file(self, path: str, partition: Any = None) -> DataFile:
        """Descriptor for an existing Parquet file, from its footer.

        NaN counts are not recorded in Parquet footers and are left empty.
        """
        record = self.partition_record(self.partition_values(partition))
        schema = self.table.schema()
        field_ids = {f.name: f.field_id for f in primitive_fields(schema)}

        with self.table.io.new_input(path).open() as f:
            footer = pq.ParquetFile(f).metadata

        value_counts: dict[int, int] = {}
        null_counts: dict[int, int] = {}
        lower: dict[int, Any] = {}
        upper: dict[int, Any] = {}
        for j in range(footer.num_columns):
            fid = field_ids.get(footer.schema.column(j).path)
            if fid is None:
                continue
            value_counts[fid] = 0
            null_counts[fid] = 0
            for i in range(footer.num_row_groups):
                row_group = footer.row_group(i)
                value_counts[fid] += row_group.num_rows
                stats = row_group.column(j).statistics
                if stats is None:
                    continue
                if stats.has_null_count:
                    null_counts[fid] += stats.null_count
                if stats.has_min_max:
                    lower[fid] = stats.min if fid not in lower else min(lower[fid], stats.min)
                    upper[fid] = stats.max if fid not in upper else max(upper[fid], stats.max)

        metrics = FileMetrics(
            record_count=footer.num_rows,
            value_counts=value_counts,
            null_value_counts=null_counts,
            lower_bounds=lower,
            upper_bounds=upper,
            column_sizes=column_sizes(footer, schema),
        )
        return self._data_file(
            path, FileFormat.PARQUET, record, metrics, file_size(self.table.io, path), row_group_offsets(footer)
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _as_arrow(records: Records) -> pa.Table | None:
        if isinstance(records, pd.DataFrame):
            return pa.Table.from_pandas(_fix_timestamp_precision(records), preserve_index=False)
        if isinstance(records, pa.RecordBatch):
            return pa.Table.from_batches([records])
        if isinstance(records, pa.Table):
            return records
        return None

    def _source_names(self) -> list[str]:
        schema = self.table.schema()
        return [schema.find_field(pf.source_id).name for pf in self.spec.fields]

    def _check_arrow_partition(self, table: pa.Table, values: tuple[Any, ...] | None) -> None:
        if values is None or table.num_rows == 0:
            return
        for name, expected in zip(self._source_names(), values):
            found = pc.unique(table.column(name)).to_pylist()
            if any(value != expected for value in found):
                raise ValueError(f"Column {name} has values {found!r} outside partition {expected!r}")

    def _check_record_partition(self, record: Mapping[str, Any], values: tuple[Any, ...] | None) -> None:
        if values is None:
            return
        for name, expected in zip(self._source_names(), values):
            if record.get(name) != expected:
                raise ValueError(
                    f"Record value {record.get(name)!r} for {name} does not match partition {expected!r}"
                )

    def _data_file(
        self,
        path: str,
        file_format: FileFormat,
        partition: Record,
        metrics: FileMetrics,
        length: int,
        offsets: list[int] | None,
    ) -> DataFile:
        schema = self.table.schema()
        data_file = DataFile.from_args(
            content=DataFileContent.DATA,
            file_path=path,
            file_format=file_format,
            partition=partition,
            record_count=metrics.record_count,
            file_size_in_bytes=length,
            column_sizes=metrics.column_sizes,
            value_counts=metrics.value_counts,
            null_value_counts=metrics.null_value_counts,
            nan_value_counts=metrics.nan_value_counts,
            lower_bounds=serialize_bounds(schema, metrics.lower_bounds),
            upper_bounds=serialize_bounds(schema, metrics.upper_bounds),
            split_offsets=offsets,
            sort_order_id=None,
            equality_ids=None,
            key_metadata=None,
        )
        data_file.spec_id = self.spec.spec_id
        return data_file
