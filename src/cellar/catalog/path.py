"""📂 Path Tables - Catalog-less Iceberg tables addressed by storage location.

Layout under a table location::

    <location>/metadata/v1.metadata.json
    <location>/metadata/v2.metadata.json
    <location>/metadata/version-hint.text     # "2"
    <location>/data/...

This is the layout PyIceberg's ``StaticTable.from_metadata`` reads, so any
published version can be opened read-only without cellar.

The swap from version N to N+1 succeeds only for the writer whose
``vN+1.metadata.json`` lands first; everyone else finds the file already
there and gets a conflict. The version hint is advisory and readers scan
past it.
"""

from __future__ import annotations

import logging
import re

import pyarrow as pa
from pyiceberg.catalog.noop import NoopCatalog
from pyiceberg.exceptions import (
    CommitFailedException,
    CommitStateUnknownException,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from pyiceberg.io import FileIO
from pyiceberg.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from pyiceberg.schema import Schema
from pyiceberg.serializers import FromInputFile
from pyiceberg.table import CommitTableResponse, Table, TableProperties
from pyiceberg.table.metadata import TableMetadata, new_table_metadata
from pyiceberg.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from pyiceberg.table.update import TableRequirement, TableUpdate, update_table_metadata
from pyiceberg.typedef import EMPTY_DICT, Identifier, Properties

from cellar.io import delete_dir, join_path, list_dirs, load_io, publish_no_clobber

logger = logging.getLogger(__name__)

WAREHOUSE = "warehouse"
VERSION_HINT = "version-hint.text"
_VERSION_FILE = re.compile(r"v(\d+)\.metadata\.json$")


def parse_version(metadata_location: str) -> int:
    match = _VERSION_FILE.search(metadata_location)
    if not match:
        raise ValueError(f"Not a versioned metadata file: {metadata_location}")
    return int(match.group(1))


def version_path(location: str, version: int) -> str:
    return join_path(location, "metadata", f"v{version}.metadata.json")


def _read_hint(io: FileIO, location: str) -> int:
    hint = io.new_input(join_path(location, "metadata", VERSION_HINT))
    if not hint.exists():
        return 0
    with hint.open() as stream:
        content = stream.read()
    try:
        return int(content.decode().strip())
    except ValueError:
        logger.warning("Ignoring unreadable version hint at %s", hint.location)
        return 0


def _write_hint(io: FileIO, location: str, version: int) -> None:
    hint_path = join_path(location, "metadata", VERSION_HINT)
    try:
        with io.new_output(hint_path).create(overwrite=True) as stream:
            stream.write(str(version).encode())
    except OSError as exc:
        # Readers scan past a stale hint
        logger.warning("Failed to update version hint for %s: %s", location, exc)


def latest_version(io: FileIO, location: str) -> int:
    """Highest published version at ``location``, 0 if there is none."""
    version = _read_hint(io, location)
    if version and not io.new_input(version_path(location, version)).exists():
        version = 0
    while io.new_input(version_path(location, version + 1)).exists():
        version += 1
    return version


def _publish(io: FileIO, metadata_location: str, metadata: TableMetadata) -> None:
    publish_no_clobber(io, metadata_location, metadata.model_dump_json(exclude_none=True).encode())


class PathTables(NoopCatalog):
    """Direct access to tables by location, without a catalog service.

    The identifier of a table is its location.

    Example:
        tables = PathTables(**{"s3.endpoint": "http://localhost:9000"})
        table = tables.create_table("/data/db/events", schema)
        table = tables.load_table("/data/db/events")
    """

    def __init__(self, name: str = "path", **properties: str):
        super().__init__(name, **properties)

    def table_location(self, identifier: str | Identifier) -> str:
        if isinstance(identifier, str):
            return identifier.rstrip("/")
        (location,) = identifier
        return location.rstrip("/")

    def table_identifier(self, identifier: str | Identifier) -> Identifier:
        return (self.table_location(identifier),)

    def _table(self, identifier: Identifier, metadata_location: str, metadata: TableMetadata, io: FileIO) -> Table:
        return Table(
            identifier=identifier,
            metadata=metadata,
            metadata_location=metadata_location,
            io=io,
            catalog=self,
        )

    def load_table(self, identifier: str | Identifier) -> Table:
        """Load the newest published version of a table.

        Raises:
            IOInitializationError: If storage for the location is unusable
            NoSuchTableError: If there is no table metadata there
        """
        location = self.table_location(identifier)
        io = load_io(self.properties, location)
        version = latest_version(io, location)
        if version == 0:
            raise NoSuchTableError(f"No table metadata found at {location}")

        metadata_location = version_path(location, version)
        metadata = FromInputFile.table_metadata(io.new_input(metadata_location))
        return self._table(self.table_identifier(identifier), metadata_location, metadata, io)

    def table_exists(self, identifier: str | Identifier) -> bool:
        location = self.table_location(identifier)
        return latest_version(load_io(self.properties, location), location) > 0

    def create_table(
        self,
        identifier: str | Identifier,
        schema: Schema | pa.Schema,
        location: str | None = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: Properties = EMPTY_DICT,
    ) -> Table:
        """Publish ``v1.metadata.json`` for a new table.

        Raises:
            TableAlreadyExistsError: If a table already lives there
            IOInitializationError: If the storage has no atomic create
        """
        table_location = self.table_location(identifier)
        if location is not None and location.rstrip("/") != table_location:
            raise ValueError(f"Table {table_location} cannot be placed at {location}")

        properties = dict(properties)
        format_version = int(properties.get(TableProperties.FORMAT_VERSION, TableProperties.DEFAULT_FORMAT_VERSION))
        schema = self._convert_schema_if_needed(schema, format_version)
        # new_table_metadata pops format-version from the mapping it is given
        metadata = new_table_metadata(
            schema=schema,
            partition_spec=partition_spec,
            sort_order=sort_order,
            location=table_location,
            properties=dict(properties),
        )

        io = load_io(self.properties, table_location)
        metadata_location = version_path(table_location, 1)
        try:
            _publish(io, metadata_location, metadata)
        except FileExistsError as exc:
            raise TableAlreadyExistsError(f"Table already exists at {table_location}") from exc
        _write_hint(io, table_location, 1)

        logger.info("Created table at %s", table_location)
        return self._table(self.table_identifier(identifier), metadata_location, metadata, io)

    def commit_table(
        self, table: Table, requirements: tuple[TableRequirement, ...], updates: tuple[TableUpdate, ...]
    ) -> CommitTableResponse:
        """Publish the next version of ``table`` if nobody else has.

        Raises:
            CommitFailedException: If the table moved past ``table.metadata_location``
            CommitStateUnknownException: If publishing failed in an unknown state
            IOInitializationError: If the storage has no atomic create
        """
        location = self.table_location(table.name())
        current = self.load_table(table.name())
        if current.metadata_location != table.metadata_location:
            raise CommitFailedException(
                f"Base {table.metadata_location} is stale, current is {current.metadata_location}"
            )

        for requirement in requirements:
            requirement.validate(current.metadata)
        metadata = update_table_metadata(current.metadata, updates, metadata_location=current.metadata_location)

        version = parse_version(current.metadata_location) + 1
        new_location = version_path(location, version)
        try:
            _publish(current.io, new_location, metadata)
        except FileExistsError as exc:
            raise CommitFailedException(f"{new_location} was published by another writer") from exc
        except OSError as exc:
            raise CommitStateUnknownException(f"Publishing {new_location} failed: {exc}") from exc

        _write_hint(current.io, location, version)
        return CommitTableResponse(metadata=metadata, metadata_location=new_location)


class PathCatalog(PathTables):
    """Catalog whose tables live at ``<warehouse>/<namespace...>/<name>``.

    Example:
        catalog = PathCatalog("local", warehouse="/tmp/warehouse")
        catalog.create_table("db.events", schema)
    """

    def __init__(self, name: str, **properties: str):
        super().__init__(name, **properties)
        if WAREHOUSE not in self.properties:
            raise ValueError(f"Path catalog '{name}' requires a '{WAREHOUSE}' property")
        self.io = load_io(self.properties, self.warehouse)

    @property
    def warehouse(self) -> str:
        return self.properties[WAREHOUSE].rstrip("/")

    def table_location(self, identifier: str | Identifier) -> str:
        return join_path(self.warehouse, *self.identifier_to_tuple(identifier))

    def table_identifier(self, identifier: str | Identifier) -> Identifier:
        return self.identifier_to_tuple(identifier)

    def list_tables(self, namespace: str | Identifier) -> list[Identifier]:
        namespace = self.identifier_to_tuple(namespace)
        return [
            (*namespace, entry)
            for entry in list_dirs(self.io, join_path(self.warehouse, *namespace))
            if self.table_exists((*namespace, entry))
        ]

    def drop_table(self, identifier: str | Identifier) -> None:
        """Drop a table by deleting its directory, data files included."""
        if not self.table_exists(identifier):
            raise NoSuchTableError(f"Table not found: {'.'.join(self.identifier_to_tuple(identifier))}")
        delete_dir(self.io, self.table_location(identifier))
        logger.info("Dropped table %s", ".".join(self.identifier_to_tuple(identifier)))
