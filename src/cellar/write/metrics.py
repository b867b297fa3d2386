"""📏 Metrics - Per-column statistics collected while a file is written.

Statistics are keyed by field id and reflect exactly the rows written:
value counts include nulls and NaNs, null and NaN counts are kept apart,
and bounds only ever cover real values. Infinities are real values.

Only top-level primitive columns are tracked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pyarrow as pa
import pyarrow.compute as pc
from pyiceberg.conversions import to_bytes
from pyiceberg.schema import Schema
from pyiceberg.types import DoubleType, FloatType, NestedField


@dataclass(frozen=True)
class FileMetrics:
    record_count: int
    value_counts: dict[int, int] = field(default_factory=dict)
    null_value_counts: dict[int, int] = field(default_factory=dict)
    nan_value_counts: dict[int, int] = field(default_factory=dict)
    lower_bounds: dict[int, Any] = field(default_factory=dict)
    upper_bounds: dict[int, Any] = field(default_factory=dict)
    column_sizes: dict[int, int] | None = None


def is_floating(nested_field: NestedField) -> bool:
    return isinstance(nested_field.field_type, (FloatType, DoubleType))


def primitive_fields(schema: Schema) -> list[NestedField]:
    return [f for f in schema.fields if f.field_type.is_primitive]


def serialize_bounds(schema: Schema, bounds: dict[int, Any]) -> dict[int, bytes]:
    """Iceberg single-value binary form of each bound."""
    return {
        field_id: to_bytes(schema.find_field(field_id).field_type, value)
        for field_id, value in bounds.items()
    }


class MetricsCollector:
    """Running column statistics over the batches handed to a writer.

    Example:
        collector = MetricsCollector(schema)
        collector.update(batch)
        collector.result(column_sizes={1: 120})
    """

    def __init__(self, schema: Schema):
        self.schema = schema
        self.fields = primitive_fields(schema)
        self.record_count = 0
        self._values: dict[int, int] = {f.field_id: 0 for f in self.fields}
        self._nulls: dict[int, int] = {f.field_id: 0 for f in self.fields}
        self._nans: dict[int, int] = {f.field_id: 0 for f in self.fields if is_floating(f)}
        self._lower: dict[int, Any] = {}
        self._upper: dict[int, Any] = {}

    def update(self, data: pa.Table | pa.RecordBatch) -> None:
        self.record_count += data.num_rows
        for f in self.fields:
            column = data.column(f.name)
            self._values[f.field_id] += len(column)
            self._nulls[f.field_id] += column.null_count

            values = column
            if is_floating(f):
                nan_mask = pc.is_nan(column)
                self._nans[f.field_id] += pc.sum(nan_mask).as_py() or 0
                values = pc.filter(column, pc.invert(nan_mask))

            if len(values) == 0:
                continue
            min_max = pc.min_max(values)
            self._merge(f.field_id, min_max["min"].as_py(), min_max["max"].as_py())

    def _merge(self, field_id: int, low: Any, high: Any) -> None:
        if low is None:
            return
        current_low = self._lower.get(field_id)
        current_high = self._upper.get(field_id)
        self._lower[field_id] = low if current_low is None else min(current_low, low)
        self._upper[field_id] = high if current_high is None else max(current_high, high)

    def result(self, column_sizes: dict[int, int] | None = None) -> FileMetrics:
        return FileMetrics(
            record_count=self.record_count,
            value_counts=dict(self._values),
            null_value_counts=dict(self._nulls),
            nan_value_counts=dict(self._nans),
            lower_bounds=dict(self._lower),
            upper_bounds=dict(self._upper),
            column_sizes=column_sizes,
        )
