"""🧪 Tests for the direct-path and SQLite catalog backends."""

import sqlite3

import pytest
from pyiceberg.exceptions import (
    CommitFailedException,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from pyiceberg.table import StaticTable
from pyiceberg.table.update import AssertRefSnapshotId, AssertTableUUID, SetPropertiesUpdate

from cellar.catalog.path import VERSION_HINT, PathCatalog, PathTables, latest_version, parse_version
from cellar.catalog.sql import SqlCatalog, sqlite_uri
from cellar.errors import IndeterminateCommitError
from cellar.table import data_files, new_append
from cellar.write import FileMetadataBuilder


def _set_property(catalog, table, key, value):
    return catalog.commit_table(
        table,
        (AssertTableUUID(uuid=table.metadata.table_uuid),),
        (SetPropertiesUpdate(updates={key: value}),),
    )


class TestPathTables:
    """Tests for catalog-less tables."""

    def test_create_writes_first_version(self, path_table, table_location):
        assert path_table.name() == (table_location,)
        assert path_table.location() == table_location
        assert path_table.metadata_location == f"{table_location}/metadata/v1.metadata.json"
        assert path_table.current_snapshot() is None

    def test_load(self, path_tables, path_table, table_location, schema):
        table = path_tables.load_table(table_location)

        assert table.schema() == schema
        assert table.metadata.table_uuid == path_table.metadata.table_uuid
        assert path_tables.table_exists(table_location)

    def test_create_twice(self, path_tables, path_table, table_location, schema):
        with pytest.raises(TableAlreadyExistsError):
            path_tables.create_table(table_location, schema)

    def test_load_missing(self, path_tables, warehouse):
        with pytest.raises(NoSuchTableError, match="No table metadata"):
            path_tables.load_table(f"{warehouse}/nothing/here")

    def test_partitioned_create(self, partitioned_table):
        assert not partitioned_table.spec().is_unpartitioned()
        assert partitioned_table.spec().fields[0].name == "region"

    def test_location_must_match(self, path_tables, table_location, warehouse, schema):
        with pytest.raises(ValueError, match="cannot be placed"):
            path_tables.create_table(table_location, schema, location=f"{warehouse}/elsewhere")


class TestPathVersions:
    def test_parse_version(self):
        assert parse_version("/t/metadata/v12.metadata.json") == 12
        with pytest.raises(ValueError):
            parse_version("/t/metadata/00001-abc.metadata.json")

    def test_stale_base_conflicts(self, path_tables, path_table):
        response = _set_property(path_tables, path_table, "k", "1")
        assert response.metadata_location.endswith("v2.metadata.json")

        with pytest.raises(CommitFailedException, match="stale"):
            _set_property(path_tables, path_table, "k", "2")

    def test_scans_past_stale_hint(self, path_tables, path_table, table_location):
        _set_property(path_tables, path_table, "k", "1")

        # A writer that published v2 but died before updating the hint
        with open(f"{table_location}/metadata/{VERSION_HINT}", "w") as f:
            f.write("1")

        assert latest_version(path_table.io, table_location) == 2
        assert path_tables.load_table(table_location).metadata_location.endswith("v2.metadata.json")

    def test_unreadable_hint_is_ignored(self, path_table, table_location):
        with open(f"{table_location}/metadata/{VERSION_HINT}", "w") as f:
            f.write("garbage")

        assert latest_version(path_table.io, table_location) == 1

    def test_readable_without_cellar(self, path_table, table_location, records, fast_retry):
        data_file = FileMetadataBuilder(path_table).write_file(None, records)
        new_append(path_table, fast_retry).append([data_file])

        static = StaticTable.from_metadata(f"{table_location}/metadata/v2.metadata.json")
        assert static.scan().to_arrow().num_rows == 10

        # The version hint resolves to the same file
        assert StaticTable.from_metadata(table_location).metadata_location.endswith("v2.metadata.json")


class TestPathCatalog:
    @pytest.fixture
    def catalog(self, warehouse):
        catalog = PathCatalog("local", warehouse=warehouse)
        yield catalog
        catalog.close()

    def test_requires_warehouse(self):
        with pytest.raises(ValueError, match="requires a 'warehouse'"):
            PathCatalog("local")

    def test_create_and_load(self, catalog, warehouse, schema):
        created = catalog.create_table("db.events", schema)
        loaded = catalog.load_table("db.events")

        assert created.location() == f"{warehouse}/db/events"
        assert loaded.name() == ("db", "events")
        assert catalog.table_exists("db.events")

    def test_create_existing(self, catalog, schema):
        catalog.create_table("db.events", schema)
        with pytest.raises(TableAlreadyExistsError):
            catalog.create_table("db.events", schema)

    def test_list_tables(self, catalog, schema, warehouse, tmp_path):
        catalog.create_table("db.b", schema)
        catalog.create_table("db.a", schema)
        (tmp_path / "warehouse" / "db" / "not_a_table").mkdir()

        assert catalog.list_tables("db") == [("db", "a"), ("db", "b")]
        assert catalog.list_tables("other") == []

    def test_drop_table(self, catalog, schema):
        catalog.create_table("db.events", schema)

        catalog.drop_table("db.events")

        assert not catalog.table_exists("db.events")
        with pytest.raises(NoSuchTableError):
            catalog.drop_table("db.events")


class TestSqlCatalog:
    """Tests for the SQLite pointer catalog."""

    @pytest.fixture
    def db_path(self, tmp_path):
        return tmp_path / "catalog.db"

    @pytest.fixture
    def catalog(self, db_path, warehouse):
        catalog = SqlCatalog("test", uri=str(db_path), warehouse=warehouse)
        yield catalog
        catalog.close()

    def test_sqlite_uri(self):
        assert sqlite_uri("/data/catalog.db") == "sqlite:////data/catalog.db?timeout=30"
        assert sqlite_uri("sqlite:///c.db?x=1", "5") == "sqlite:///c.db?x=1&timeout=5"
        assert sqlite_uri("sqlite:///c.db?timeout=1") == "sqlite:///c.db?timeout=1"

    def test_requires_uri(self, warehouse):
        with pytest.raises(ValueError, match="requires a 'uri'"):
            SqlCatalog("test", warehouse=warehouse)

    def test_requires_warehouse(self, db_path):
        with pytest.raises(ValueError, match="requires a 'warehouse'"):
            SqlCatalog("test", uri=str(db_path))

    def test_creates_database_directory(self, tmp_path, warehouse):
        catalog = SqlCatalog("test", uri=str(tmp_path / "nested" / "catalog.db"), warehouse=warehouse)
        catalog.close()

        assert (tmp_path / "nested" / "catalog.db").exists()

    def test_create_and_load(self, catalog, schema, region_spec, warehouse):
        created = catalog.create_table("db.events", schema, partition_spec=region_spec, properties={"k": "v"})
        loaded = catalog.load_table("db.events")

        assert loaded.metadata_location == created.metadata_location
        assert loaded.location() == f"{warehouse}/db/events"
        assert loaded.spec().fields[0].name == "region"
        assert loaded.properties["k"] == "v"

    def test_create_existing(self, catalog, schema):
        catalog.create_table("db.events", schema)
        with pytest.raises(TableAlreadyExistsError):
            catalog.create_table("db.events", schema)

    def test_load_missing(self, catalog):
        with pytest.raises(NoSuchTableError):
            catalog.load_table("db.nope")

    def test_catalogs_are_isolated_by_name(self, catalog, db_path, warehouse, schema):
        catalog.create_table("db.events", schema)
        other = SqlCatalog("other", uri=str(db_path), warehouse=warehouse)

        assert not other.table_exists("db.events")
        other.close()

    def test_list_and_drop(self, catalog, schema):
        catalog.create_table("db.b", schema)
        catalog.create_table("db.a", schema)

        assert sorted(catalog.list_tables("db")) == [("db", "a"), ("db", "b")]

        catalog.drop_table("db.a")
        assert catalog.list_tables("db") == [("db", "b")]
        with pytest.raises(NoSuchTableError):
            catalog.drop_table("db.a")

    def test_compare_and_swap(self, catalog, schema, records, fast_retry):
        table = catalog.create_table("db.events", schema)
        stale = catalog.load_table("db.events")
        new_append(table, fast_retry).append([FileMetadataBuilder(table).write_file(None, records)])

        with pytest.raises(CommitFailedException):
            catalog.commit_table(
                stale,
                (AssertRefSnapshotId(ref="main", snapshot_id=None),),
                (SetPropertiesUpdate(updates={"k": "v"}),),
            )

        assert catalog.load_table("db.events").metadata_location == table.metadata_location

    def test_locked_database_is_indeterminate(self, monkeypatch, db_path, warehouse, schema, records, fast_retry):
        catalog = SqlCatalog("test", uri=str(db_path), warehouse=warehouse, **{"sql.timeout": "0.05"})
        table = catalog.create_table("db.events", schema)
        base_location = table.metadata_location
        data_file = FileMetadataBuilder(table).write_file(None, records)

        lock = sqlite3.connect(db_path, isolation_level=None)
        write_metadata = catalog._write_metadata

        def write_then_lock(metadata, io, metadata_path):
            write_metadata(metadata=metadata, io=io, metadata_path=metadata_path)
            lock.execute("BEGIN EXCLUSIVE")

        monkeypatch.setattr(catalog, "_write_metadata", write_then_lock)
        try:
            with pytest.raises(IndeterminateCommitError, match="unknown outcome") as exc_info:
                new_append(table, fast_retry).append([data_file])
        finally:
            lock.rollback()
            lock.close()

        assert exc_info.value.base_location == base_location
        # The pointer never moved
        assert catalog.load_table("db.events").metadata_location == base_location
        assert data_files(catalog.load_table("db.events")) == []
        catalog.close()
