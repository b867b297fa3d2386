"""✍️ Write - Data file writers, metrics and descriptors."""

from .appender import AppenderHelper
from .builder import FileMetadataBuilder
from .metrics import FileMetrics, MetricsCollector
from .writers import FormatWriter, OrcFormatWriter, ParquetFormatWriter, new_writer

__all__ = [
    "AppenderHelper",
    "FileMetadataBuilder",
    "FileMetrics",
    "MetricsCollector",
    "FormatWriter",
    "ParquetFormatWriter",
    "OrcFormatWriter",
    "new_writer",
]
