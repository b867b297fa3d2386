"""✍️ Format Writers - Stream records into Parquet or ORC data files.

A writer owns one output stream. Records arrive one at a time through
``append()`` or in bulk through ``write()``; after ``close()`` the writer
reports the file length, column metrics and split offsets taken from its
own footer.

Each format only sees the properties meant for it::

    Parquet (.*parquet.*)                 ORC (^orc\\..*)
    write.parquet.row-group-limit         orc.stripe.size
    write.parquet.compression-codec       orc.compress
    write.parquet.compression-level       orc.compress.size
    write.parquet.page-size-bytes         orc.row.batch.size
    write.parquet.dict-size-bytes

Options are checked before the output file is created, so a bad
configuration never leaves a file behind.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import pyarrow as pa
import pyarrow.orc as po
import pyarrow.parquet as pq
from pyiceberg.io import FileIO
from pyiceberg.manifest import FileFormat
from pyiceberg.schema import Schema

from cellar.config import (
    ORC_CONFIG_PATTERN,
    PARQUET_CONFIG_PATTERN,
    filter_properties,
    property_as_int,
)
from cellar.errors import WriteError
from cellar.io import file_size
from cellar.write.metrics import FileMetrics, MetricsCollector, primitive_fields

logger = logging.getLogger(__name__)

PARQUET_ROW_GROUP_LIMIT = "write.parquet.row-group-limit"
PARQUET_COMPRESSION = "write.parquet.compression-codec"
PARQUET_COMPRESSION_LEVEL = "write.parquet.compression-level"
PARQUET_PAGE_SIZE_BYTES = "write.parquet.page-size-bytes"
PARQUET_DICT_SIZE_BYTES = "write.parquet.dict-size-bytes"

ORC_STRIPE_SIZE = "orc.stripe.size"
ORC_COMPRESS = "orc.compress"
ORC_COMPRESS_SIZE = "orc.compress.size"
ORC_ROW_BATCH_SIZE = "orc.row.batch.size"

DEFAULT_ROW_GROUP_LIMIT = 1_048_576
DEFAULT_ORC_BATCH_SIZE = 1024

PARQUET_CODECS = {"uncompressed": "none", "none": "none", "snappy": "snappy", "gzip": "gzip",
                  "brotli": "brotli", "lz4": "lz4", "zstd": "zstd"}
ORC_CODECS = {"none": "uncompressed", "uncompressed": "uncompressed", "snappy": "snappy",
              "zlib": "zlib", "lz4": "lz4", "zstd": "zstd"}


def file_extension(file_format: FileFormat) -> str:
    return file_format.value.lower()


def row_group_offsets(file_metadata: pq.FileMetaData) -> list[int]:
    """Start offset of each row group, ascending.

    A row group starts at its first column chunk's dictionary page when it
    has one, otherwise at the first data page.
    """
    offsets = []
    for i in range(file_metadata.num_row_groups):
        first_column = file_metadata.row_group(i).column(0)
        offset = first_column.data_page_offset
        if first_column.has_dictionary_page and first_column.dictionary_page_offset < offset:
            offset = first_column.dictionary_page_offset
        offsets.append(offset)
    return sorted(offsets)


def column_sizes(file_metadata: pq.FileMetaData, schema: Schema) -> dict[int, int]:
    """Compressed bytes per top-level primitive field id, summed across row groups."""
    field_ids = {f.name: f.field_id for f in primitive_fields(schema)}
    sizes = dict.fromkeys(field_ids.values(), 0)
    for i in range(file_metadata.num_row_groups):
        row_group = file_metadata.row_group(i)
        for j in range(row_group.num_columns):
            column = row_group.column(j)
            if column.path_in_schema in field_ids:
                sizes[field_ids[column.path_in_schema]] += column.total_compressed_size
    return sizes


def _codec(properties: Mapping[str, str], key: str, codecs: dict[str, str], default: str) -> str:
    value = properties.get(key, default).lower()
    if value not in codecs:
        raise ValueError(f"Unsupported {key} {value!r}, expected one of {sorted(codecs)}")
    return codecs[value]


class FormatWriter(ABC):
    """Single-file writer.

    Subclasses validate their options in ``_options``, then implement
    ``_open``, ``_write_table``, ``_finish`` and the footer-derived
    accessors. Records buffered through ``append()`` are converted to Arrow
    in batches of ``batch_size``.

    Raises:
        WriteError: If the options are invalid or the file cannot be opened;
            no file is left behind in either case
    """

    file_format: FileFormat

    def __init__(self, io: FileIO, path: str, schema: Schema, properties: Mapping[str, str]):
        self.io = io
        self.path = path
        self.schema = schema
        self.arrow_schema = schema.as_arrow()
        self._collector = MetricsCollector(schema)
        self._pending: list[dict[str, Any]] = []
        self._length: int | None = None

        try:
            self.batch_size, options = self._options(properties)
        except ValueError as exc:
            raise WriteError(f"Invalid {file_extension(self.file_format)} options for {path}: {exc}", path) from exc

        self._stream = io.new_output(path).create(overwrite=False)
        try:
            self._open(options)
        except (pa.ArrowException, OSError, ValueError, TypeError) as exc:
            self._stream.close()
            io.delete(path)
            raise WriteError(f"Cannot open {path} for writing: {exc}", path) from exc

    @property
    def closed(self) -> bool:
        return self._length is not None

    def append(self, record: Mapping[str, Any]) -> None:
        """Buffer one record."""
        self._check_open()
        self._pending.append(dict(record))
        if len(self._pending) >= self.batch_size:
            self._flush_pending()

    def write(self, data: pa.Table | pa.RecordBatch) -> None:
        """Write a batch of rows in table column order."""
        self._check_open()
        self._flush_pending()
        self._write_arrow(data)

    def _flush_pending(self) -> None:
        if not self._pending:
            return
        batch = pa.Table.from_pylist(self._pending, schema=self.arrow_schema)
        self._pending = []
        self._write_arrow(batch)

    def _write_arrow(self, data: pa.Table | pa.RecordBatch) -> None:
        if isinstance(data, pa.RecordBatch):
            data = pa.Table.from_batches([data])
        table = data.select([f.name for f in self.schema.fields]).cast(self.arrow_schema)
        if table.num_rows == 0:
            return
        self._collector.update(table)
        self._write_table(table)

    def close(self) -> None:
        """Flush, write the footer and close the stream. Idempotent."""
        if self.closed:
            return
        self._flush_pending()
        self._finish()
        if self._stream.closed:
            self._length = file_size(self.io, self.path)
        else:
            self._length = self._stream.tell()
            self._stream.close()
        logger.debug("Wrote %s (%d records, %d bytes)", self.path, self.record_count, self._length)

    def abort(self) -> None:
        """Drop buffered rows and release the stream. The file is left as is."""
        if self.closed:
            return
        self._length = -1
        self._pending = []
        try:
            self._discard()
            if not self._stream.closed:
                self._stream.close()
        except (OSError, pa.ArrowException) as exc:
            logger.warning("Failed to close aborted file %s: %s", self.path, exc)

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError(f"Writer for {self.path} is closed")

    def _check_finished(self) -> None:
        if self._length is None or self._length < 0:
            raise ValueError(f"Writer for {self.path} has not been closed successfully")

    @property
    def record_count(self) -> int:
        return self._collector.record_count

    def length(self) -> int:
        """File size in bytes. Only valid after ``close()``."""
        self._check_finished()
        return self._length

    def metrics(self) -> FileMetrics:
        self._check_finished()
        return self._collector.result(column_sizes=self._column_sizes())

    @abstractmethod
    def split_offsets(self) -> list[int] | None:
        """Ascending recommended split positions, or None if unknown."""

    @abstractmethod
    def _options(self, properties: Mapping[str, str]) -> tuple[int, dict[str, Any]]:
        """Batch size and writer keyword arguments, or ValueError."""

    @abstractmethod
    def _open(self, options: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def _write_table(self, table: pa.Table) -> None:
        pass

    @abstractmethod
    def _finish(self) -> None:
        pass

    @abstractmethod
    def _discard(self) -> None:
        pass

    def _column_sizes(self) -> dict[int, int] | None:
        return None


class ParquetFormatWriter(FormatWriter):
    """Parquet writer with row groups capped at ``write.parquet.row-group-limit`` rows."""

    file_format = FileFormat.PARQUET

    def _options(self, properties: Mapping[str, str]) -> tuple[int, dict[str, Any]]:
        properties = filter_properties(properties, PARQUET_CONFIG_PATTERN)
        self.row_group_limit = property_as_int(properties, PARQUET_ROW_GROUP_LIMIT, DEFAULT_ROW_GROUP_LIMIT)
        if self.row_group_limit <= 0:
            raise ValueError(f"{PARQUET_ROW_GROUP_LIMIT} must be positive, got {self.row_group_limit}")

        options: dict[str, Any] = {"compression": _codec(properties, PARQUET_COMPRESSION, PARQUET_CODECS, "zstd")}
        if PARQUET_COMPRESSION_LEVEL in properties:
            options["compression_level"] = property_as_int(properties, PARQUET_COMPRESSION_LEVEL, 0)
        if PARQUET_PAGE_SIZE_BYTES in properties:
            options["data_page_size"] = property_as_int(properties, PARQUET_PAGE_SIZE_BYTES, 0)
        if PARQUET_DICT_SIZE_BYTES in properties:
            options["dictionary_pagesize_limit"] = property_as_int(properties, PARQUET_DICT_SIZE_BYTES, 0)
        return min(self.row_group_limit, 10_000), options

    def _open(self, options: dict[str, Any]) -> None:
        self._writer = pq.ParquetWriter(self._stream, self.arrow_schema, **options)
        self._buffer: list[pa.Table] = []
        self._buffered_rows = 0
        self._footer: pq.FileMetaData | None = None

    def _write_table(self, table: pa.Table) -> None:
        self._buffer.append(table)
        self._buffered_rows += table.num_rows
        if self._buffered_rows >= self.row_group_limit:
            self._flush_row_groups(final=False)

    def _flush_row_groups(self, final: bool) -> None:
        if not self._buffer:
            return
        combined = pa.concat_tables(self._buffer)
        full = (combined.num_rows // self.row_group_limit) * self.row_group_limit
        cut = combined.num_rows if final else full
        if cut:
            self._writer.write_table(combined.slice(0, cut), row_group_size=self.row_group_limit)
        remainder = combined.slice(cut)
        self._buffer = [remainder] if remainder.num_rows else []
        self._buffered_rows = remainder.num_rows

    def _finish(self) -> None:
        self._flush_row_groups(final=True)
        self._writer.close()
        self._footer = self._writer.writer.metadata

    def _discard(self) -> None:
        self._buffer = []
        self._writer.close()

    def split_offsets(self) -> list[int]:
        self._check_finished()
        return row_group_offsets(self._footer)

    def _column_sizes(self) -> dict[int, int]:
        return column_sizes(self._footer, self.schema)


class OrcFormatWriter(FormatWriter):
    """ORC writer. Stripe positions are not exposed, so there are no split offsets."""

    file_format = FileFormat.ORC

    def _options(self, properties: Mapping[str, str]) -> tuple[int, dict[str, Any]]:
        properties = filter_properties(properties, ORC_CONFIG_PATTERN)
        batch_size = property_as_int(properties, ORC_ROW_BATCH_SIZE, DEFAULT_ORC_BATCH_SIZE)
        if batch_size <= 0:
            raise ValueError(f"{ORC_ROW_BATCH_SIZE} must be positive, got {batch_size}")

        options: dict[str, Any] = {"batch_size": batch_size}
        if ORC_STRIPE_SIZE in properties:
            options["stripe_size"] = property_as_int(properties, ORC_STRIPE_SIZE, 0)
        if ORC_COMPRESS in properties:
            options["compression"] = _codec(properties, ORC_COMPRESS, ORC_CODECS, "zlib")
        if ORC_COMPRESS_SIZE in properties:
            options["compression_block_size"] = property_as_int(properties, ORC_COMPRESS_SIZE, 0)
        return batch_size, options

    def _open(self, options: dict[str, Any]) -> None:
        self._writer = po.ORCWriter(self._stream, **options)

    def _write_table(self, table: pa.Table) -> None:
        self._writer.write(table)

    def _finish(self) -> None:
        self._writer.close()

    def _discard(self) -> None:
        self._writer.close()

    def split_offsets(self) -> None:
        self._check_finished()
        return None


_WRITERS: dict[FileFormat, type[FormatWriter]] = {
    FileFormat.PARQUET: ParquetFormatWriter,
    FileFormat.ORC: OrcFormatWriter,
}


def new_writer(
    file_format: FileFormat | str,
    io: FileIO,
    path: str,
    schema: Schema,
    properties: Mapping[str, str] | None = None,
) -> FormatWriter:
    """Open a writer for ``file_format`` at ``path``.

    Raises:
        ValueError: If the format is not supported
        WriteError: If the options are invalid or the file cannot be opened
    """
    file_format = FileFormat(file_format)
    if file_format not in _WRITERS:
        raise ValueError(f"Unsupported file format: {file_format.value}")
    return _WRITERS[file_format](io, path, schema, properties or {})
