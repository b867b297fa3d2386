"""🧪 End-to-end scenarios: loaders shipped to workers, files written, commits raced.

These run entirely on the local filesystem and a temporary SQLite catalog.
"""

import pickle
import threading

import pytest

from cellar.catalog.loader import TableLoader
from cellar.catalog.path import PathTables
from cellar.commit.coordinator import CommitCoordinator
from cellar.table import data_files, history
from cellar.write.builder import FileMetadataBuilder

pytestmark = pytest.mark.integration


def snapshot_chain(table) -> list[int]:
    """Snapshot ids from the current main snapshot back to the root."""
    chain = []
    snapshot = table.current_snapshot()
    while snapshot is not None:
        chain.append(snapshot.snapshot_id)
        parent = snapshot.parent_snapshot_id
        snapshot = table.snapshot_by_id(parent) if parent is not None else None
    return chain


def total_records(snapshot) -> int:
    return int(snapshot.summary["total-records"])


def test_direct_path_single_append(path_loader, records, fast_retry):
    """A worker opens a shipped direct-path loader and appends ten records."""
    worker_loader = pickle.loads(pickle.dumps(path_loader))

    with worker_loader:
        table = worker_loader.load_table()
        data_file = FileMetadataBuilder(table).write_file(None, records)
        snapshot = CommitCoordinator(table, fast_retry).append([data_file])

    with path_loader.clone() as reader:
        table = reader.load_table()
        assert len(table.snapshots()) == 1
        assert table.current_snapshot().snapshot_id == snapshot.snapshot_id
        assert total_records(table.current_snapshot()) == 10


def test_two_workers_from_same_base(path_loader, record_factory, fast_retry, monkeypatch):
    """The second committer loses the race once, retries and lands on top."""
    worker_1 = path_loader.clone().open()
    worker_2 = path_loader.clone().open()
    table_1 = worker_1.load_table()
    table_2 = worker_2.load_table()

    file_1 = FileMetadataBuilder(table_1).write_file(None, record_factory(5))
    file_2 = FileMetadataBuilder(table_2).write_file(None, record_factory(5, start=5))

    attempts = []
    commit_table = table_2.catalog.commit_table

    def commit_after_worker_1(table, requirements, updates):
        attempts.append(table.metadata_location)
        if len(attempts) == 1:
            CommitCoordinator(table_1, fast_retry).append([file_1])
        return commit_table(table, requirements, updates)

    monkeypatch.setattr(table_2.catalog, "commit_table", commit_after_worker_1)
    CommitCoordinator(table_2, fast_retry).append([file_2])

    worker_1.close()
    worker_2.close()

    with path_loader.clone() as reader:
        table = reader.load_table()
        rows = history(table)
        assert len(rows) == 2
        assert rows["parent_id"].iloc[1] == rows["snapshot_id"].iloc[0]
        assert total_records(table.current_snapshot()) == 10
        assert {f.file_path for f in data_files(table)} == {file_1.file_path, file_2.file_path}
    assert len(attempts) == 2


def test_catalog_loader_survives_catalog_close(sql_catalog_loader, schema, records, fast_retry):
    """A pickled catalog-backed loader reopens after the driver's catalog is gone."""
    catalog = sql_catalog_loader.load_catalog()
    catalog.create_table("db.events", schema)
    loader = TableLoader.from_catalog(sql_catalog_loader, "db.events")
    payload = pickle.dumps(loader)
    catalog.close()

    with pickle.loads(payload) as worker_loader:
        table = worker_loader.load_table()
        assert table.name() == ("db", "events")
        data_file = FileMetadataBuilder(table).write_file(None, records)
        CommitCoordinator(table, fast_retry).append([data_file])

    with sql_catalog_loader.load_catalog() as catalog:
        assert total_records(catalog.load_table("db.events").current_snapshot()) == 10


def test_branch_append_leaves_main_untouched(path_loader, record_factory, fast_retry):
    """Appending to 'exp' moves only the exp ref."""
    with path_loader.clone() as loader:
        table = loader.load_table()
        builder = FileMetadataBuilder(table)
        main = CommitCoordinator(table, fast_retry).append([builder.write_file(None, record_factory(10))])
        main_files = [f.file_path for f in data_files(table, "main")]

        exp = CommitCoordinator(table, fast_retry).append(
            [builder.write_file(None, record_factory(4, start=10))], branch="exp"
        )

    with path_loader.clone() as reader:
        table = reader.load_table()
        assert table.current_snapshot().snapshot_id == main.snapshot_id
        assert table.snapshot_by_name("main").snapshot_id == main.snapshot_id
        assert table.snapshot_by_name("exp").snapshot_id == exp.snapshot_id
        assert [f.file_path for f in data_files(table, "main")] == main_files
        assert total_records(table.snapshot_by_name("exp")) == 14


@pytest.mark.parametrize("backend", ["path", "sql"])
def test_concurrent_appends_form_a_linear_chain(backend, table_location, sql_catalog_loader, schema, record_factory, fast_retry):
    """Racing writers each land exactly once, in a single linear history."""
    if backend == "path":
        loader = TableLoader.from_path(table_location)
        with PathTables() as tables:
            tables.create_table(table_location, schema)
    else:
        with sql_catalog_loader.load_catalog() as catalog:
            catalog.create_table("db.events", schema)
        loader = TableLoader.from_catalog(sql_catalog_loader, "db.events")

    workers = 4
    barrier = threading.Barrier(workers)
    errors = []

    def work(i: int) -> None:
        try:
            with loader.clone() as worker_loader:
                table = worker_loader.load_table()
                data_file = FileMetadataBuilder(table).write_file(None, record_factory(5, start=i * 5))
                barrier.wait()
                CommitCoordinator(table, fast_retry).append([data_file])
        except Exception as exc:  # surfaced via the errors list below
            errors.append(exc)

    threads = [threading.Thread(target=work, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with loader.clone() as reader:
        table = reader.load_table()
        chain = snapshot_chain(table)
        assert len(chain) == workers
        assert len(table.snapshots()) == workers
        assert sorted(s.sequence_number for s in table.snapshots()) == list(range(1, workers + 1))
        assert total_records(table.current_snapshot()) == workers * 5
        assert len(data_files(table)) == workers
