"""🧪 Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta

import pytest
from pyiceberg.partitioning import PartitionField, PartitionSpec
from pyiceberg.schema import Schema
from pyiceberg.transforms import IdentityTransform
from pyiceberg.types import DoubleType, LongType, NestedField, StringType, TimestampType

from cellar.catalog.loader import CatalogLoader, TableLoader
from cellar.catalog.path import PathTables
from cellar.config import CommitRetryConfig, get_settings


@pytest.fixture
def warehouse(tmp_path):
    """Temporary warehouse root."""
    path = tmp_path / "warehouse"
    path.mkdir()
    return str(path)


@pytest.fixture
def schema():
    """Sample events schema."""
    return Schema(
        NestedField(1, "id", LongType(), required=True),
        NestedField(2, "region", StringType(), required=False),
        NestedField(3, "amount", DoubleType(), required=False),
        NestedField(4, "event_time", TimestampType(), required=False),
    )


@pytest.fixture
def region_spec():
    """Identity partitioning on region."""
    return PartitionSpec(PartitionField(source_id=2, field_id=1000, transform=IdentityTransform(), name="region"))


def make_records(n: int, region: str = "eu", start: int = 0) -> list[dict]:
    base = datetime(2024, 1, 1)
    return [
        {
            "id": start + i,
            "region": region,
            "amount": float(i) * 1.5,
            "event_time": base + timedelta(minutes=start + i),
        }
        for i in range(n)
    ]


@pytest.fixture
def records():
    """Ten sample records in region 'eu'."""
    return make_records(10)


@pytest.fixture
def record_factory():
    """``record_factory(n, region="eu", start=0)`` builds sample records."""
    return make_records


@pytest.fixture
def fast_retry():
    """Retry policy without waits."""
    return CommitRetryConfig(num_retries=10, min_wait_ms=0, max_wait_ms=0)


@pytest.fixture
def table_location(warehouse):
    return f"{warehouse}/db/events"


@pytest.fixture
def path_tables():
    tables = PathTables()
    yield tables
    tables.close()


@pytest.fixture
def path_table(path_tables, table_location, schema):
    """Empty unpartitioned table at a direct path."""
    return path_tables.create_table(table_location, schema)


@pytest.fixture
def partitioned_table(path_tables, warehouse, schema, region_spec):
    """Empty table partitioned by region."""
    return path_tables.create_table(f"{warehouse}/db/regional", schema, partition_spec=region_spec)


@pytest.fixture
def path_loader(path_table, table_location):
    """Closed direct-path loader for the sample table."""
    return TableLoader.from_path(table_location)


@pytest.fixture
def sql_catalog_loader(tmp_path, warehouse):
    """SQLite-backed catalog loader."""
    return CatalogLoader.sql("test", uri=str(tmp_path / "catalog.db"), warehouse=warehouse)


# Environment setup for tests
@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch, tmp_path):
    """Isolate tests from the user's catalog file and environment."""
    monkeypatch.setenv("CELLAR_CONFIG", str(tmp_path / "cellar.yaml"))
    monkeypatch.delenv("CELLAR_DEFAULT_CATALOG", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
