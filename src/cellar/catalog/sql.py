"""🗃️ SQL Catalog - Table pointers in SQLite, data and metadata in the warehouse.

PyIceberg's SqlCatalog keeps one row per table with the location of its
current metadata file. A commit is a single conditional UPDATE: it only
matches when the stored location is still the one the writer started from.

Properties:
    uri         SQLite database (``sqlite:///`` prefix optional)
    warehouse   Root location for new tables
    sql.timeout Seconds to wait on a locked database (default 30)
"""

from __future__ import annotations

import logging
from pathlib import Path

import pyarrow as pa
from pyiceberg.catalog import Catalog
from pyiceberg.catalog.sql import SqlCatalog as IcebergSqlCatalog
from pyiceberg.exceptions import CommitStateUnknownException
from pyiceberg.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from pyiceberg.schema import Schema
from pyiceberg.table import CommitTableResponse, Table
from pyiceberg.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from pyiceberg.table.update import TableRequirement, TableUpdate
from pyiceberg.typedef import EMPTY_DICT, Identifier, Properties
from sqlalchemy.exc import OperationalError

from cellar.catalog.path import WAREHOUSE
from cellar.io import load_io

logger = logging.getLogger(__name__)

URI = "uri"
SQL_TIMEOUT = "sql.timeout"
DEFAULT_SQL_TIMEOUT = "30"


def sqlite_uri(uri: str, timeout: str = DEFAULT_SQL_TIMEOUT) -> str:
    """SQLAlchemy URL for a SQLite database path or URL.

    Example:
        sqlite_uri("/data/catalog.db")
        → "sqlite:////data/catalog.db?timeout=30"
    """
    if "://" not in uri:
        uri = f"sqlite:///{uri}"
    if uri.startswith("sqlite:///") and "timeout=" not in uri:
        uri += f"{'&' if '?' in uri else '?'}timeout={timeout}"
    return uri


def _sqlite_file(uri: str) -> Path | None:
    if not uri.startswith("sqlite:///"):
        return None
    path = uri.removeprefix("sqlite:///").split("?", 1)[0]
    return Path(path) if path and path != ":memory:" else None


class SqlCatalog(IcebergSqlCatalog):
    """PyIceberg SQL catalog that creates namespaces on demand.

    Example:
        catalog = SqlCatalog("prod", **{
            "uri": "/data/catalog.db",
            "warehouse": "s3://warehouse/",
            "s3.endpoint": "http://localhost:9000",
        })
        table = catalog.create_table("db.events", schema)
    """

    def __init__(self, name: str, **properties: str):
        if URI not in properties:
            raise ValueError(f"SQL catalog '{name}' requires a '{URI}' property")
        if WAREHOUSE not in properties:
            raise ValueError(f"SQL catalog '{name}' requires a '{WAREHOUSE}' property")

        uri = sqlite_uri(properties[URI], properties.get(SQL_TIMEOUT, DEFAULT_SQL_TIMEOUT))
        if db_file := _sqlite_file(uri):
            db_file.parent.mkdir(parents=True, exist_ok=True)

        super().__init__(name, **{**properties, URI: uri})
        load_io(self.properties, self.properties[WAREHOUSE])

    def create_table(
        self,
        identifier: str | Identifier,
        schema: Schema | pa.Schema,
        location: str | None = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        self.create_namespace_if_not_exists(Catalog.namespace_from(identifier))
        table = super().create_table(identifier, schema, location, partition_spec, sort_order, properties)
        logger.info("Created table %s at %s", ".".join(table.name()), table.location())
        return table

    def commit_table(
        self, table: Table, requirements: tuple[TableRequirement, ...], updates: tuple[TableUpdate, ...]
    ) -> CommitTableResponse:
        """Swap the metadata pointer of ``table``.

        Raises:
            CommitFailedException: If the pointer moved or a requirement failed
            CommitStateUnknownException: If the database failed mid-exchange
        """
        try:
            return super().commit_table(table, requirements, updates)
        except OperationalError as exc:
            raise CommitStateUnknownException(
                f"Pointer update for {'.'.join(table.name())} failed: {exc}"
            ) from exc

    def __repr__(self) -> str:
        return f"SqlCatalog(name={self.name!r}, uri={self.properties[URI]!r})"
