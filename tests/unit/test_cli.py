"""🧪 Tests for the cellar CLI."""

import pytest
import yaml

from cellar import cli
from cellar.write.appender import AppenderHelper


@pytest.fixture
def populated_table(path_table, records, fast_retry):
    helper = AppenderHelper(path_table, retry=fast_retry)
    helper.append_to_table(records)
    helper.append_to_table(records[:3], branch="exp")
    return path_table


@pytest.fixture
def wide_console(monkeypatch):
    from rich.console import Console

    console = Console(width=500, record=True)
    monkeypatch.setattr(cli, "console", console)
    return console


def test_history(populated_table, table_location, wide_console):
    assert cli.main(["history", "--location", table_location]) == 0

    output = wide_console.export_text()
    assert "History" in output
    assert "append" in output
    assert "main" in output
    assert "exp" in output


def test_refs(populated_table, table_location, wide_console):
    assert cli.main(["refs", "-l", table_location]) == 0

    output = wide_console.export_text()
    assert "main" in output
    assert "branch" in output


def test_files_on_branch(populated_table, table_location, wide_console):
    assert cli.main(["files", "-l", table_location, "--ref", "exp"]) == 0

    output = wide_console.export_text()
    assert output.count(".parquet") == 2


def test_snapshot(populated_table, table_location, wide_console):
    assert cli.main(["snapshot", "-l", table_location]) == 0

    output = wide_console.export_text()
    assert "total-records: 10" in output


def test_catalog_table(tmp_path, warehouse, schema, wide_console):
    (tmp_path / "cellar.yaml").write_text(
        yaml.safe_dump({"catalogs": {"local": {"type": "path", "warehouse": warehouse}}})
    )
    from cellar.catalog.loader import CatalogLoader

    with CatalogLoader.from_config("local").load_catalog() as catalog:
        catalog.create_table("db.events", schema)

    assert cli.main(["refs", "--catalog", "local", "--table", "db.events"]) == 0
    assert "No refs yet" in wide_console.export_text()


def test_missing_table(warehouse, wide_console):
    assert cli.main(["history", "--location", f"{warehouse}/nope"]) == 1
    assert "Error" in wide_console.export_text()


def test_requires_a_table(wide_console):
    assert cli.main(["history"]) == 1
    assert "--location or --table" in wide_console.export_text()


def test_bad_property(table_location, wide_console):
    assert cli.main(["history", "-l", table_location, "-P", "novalue"]) == 1
    assert "key=value" in wide_console.export_text()


def test_no_command(capsys):
    assert cli.main([]) == 0
    assert "usage" in capsys.readouterr().out
