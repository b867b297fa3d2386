"""🍷 Cellar - Serializable table handles and atomic appends for Iceberg tables.

Quick Start:
    from cellar import CatalogLoader, TableLoader, FileMetadataBuilder, new_append

    # Describe the table once, on the driver
    catalog = CatalogLoader.sql("prod", uri="/data/catalog.db", warehouse="/data/warehouse")
    loader = TableLoader.from_catalog(catalog, "db.events")

    # Ship it anywhere (pickle, JSON) and open it there
    with loader:
        table = loader.load_table()
        data_file = FileMetadataBuilder(table).write_file(None, records)
        new_append(table).append([data_file])

Direct paths:
    loader = TableLoader.from_path("/data/warehouse/db/events")

Tables are PyIceberg tables; anything that reads Iceberg can read them.
"""

from cellar.catalog import CatalogLoader, CatalogType, PathCatalog, PathTables, SqlCatalog, TableLoader
from cellar.commit import CommitCoordinator
from cellar.config import CommitRetryConfig
from cellar.errors import (
    CatalogConnectionError,
    CellarError,
    CommitConflictError,
    IndeterminateCommitError,
    IOInitializationError,
    NotOpenError,
    TableAlreadyExistsError,
    TableNotFoundError,
    WriteError,
)
from cellar.table import data_files, history, new_append, table_name
from cellar.write import AppenderHelper, FileMetadataBuilder

__version__ = "0.1.0"

__all__ = [
    "CatalogLoader",
    "CatalogType",
    "TableLoader",
    "PathCatalog",
    "PathTables",
    "SqlCatalog",
    "CommitCoordinator",
    "CommitRetryConfig",
    "new_append",
    "history",
    "data_files",
    "table_name",
    "FileMetadataBuilder",
    "AppenderHelper",
    "CellarError",
    "CatalogConnectionError",
    "TableNotFoundError",
    "TableAlreadyExistsError",
    "NotOpenError",
    "IOInitializationError",
    "WriteError",
    "CommitConflictError",
    "IndeterminateCommitError",
    "__version__",
]
