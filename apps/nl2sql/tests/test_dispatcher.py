"""Execution dispatcher: approved-only input, kind routing, deadline cancel, error wrapping."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from apps.nl2sql.services.connectors import (
    BigQueryConnectionConfig,
    FileConnectionConfig,
    FileConnector,
    PostgresConnectionConfig,
    TabularResult,
    create_connector,
    jsonable,
    parse_connection_config,
)
from apps.nl2sql.services.deadline import Deadline
from apps.nl2sql.services.dispatcher import ExecutionDispatcher
from apps.nl2sql.services.errors import (
    ConnectorError,
    DeadlineExceededError,
    InputError,
    UnsupportedDataSourceError,
)
from apps.nl2sql.services.sql_gate import ApprovedSQL, SQLSafetyGate


class FakeConnector:
    def __init__(self, result=None, error=None, block: threading.Event | None = None):
        self.result = result or TabularResult(columns=[{"name": "n", "type": "int", "nullable": True}], data=[{"n": 1}], row_count=1)
        self.error = error
        self.block = block
        self.calls: list[str] = []

    def connect(self):
        self.calls.append("connect")

    def test_connection(self):
        pass

    def get_schema(self):
        return []

    def get_data(self, table_name, limit):
        return self.result

    def execute(self, sql, timeout=None):
        self.calls.append(f"execute:{sql}")
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def cancel(self):
        self.calls.append("cancel")
        if self.block is not None:
            self.block.set()

    def close(self):
        self.calls.append("close")


@pytest.fixture
def executor():
    ex = ThreadPoolExecutor(max_workers=2)
    yield ex
    ex.shutdown(wait=False)


def _approved(sql: str = "SELECT 1 AS n LIMIT 1") -> ApprovedSQL:
    return SQLSafetyGate().approve(sql)


PG = {"host": "db", "database": "analytics", "username": "ro"}


def test_rejects_raw_string(executor) -> None:
    d = ExecutionDispatcher(lambda k, c: FakeConnector(), executor=executor)
    with pytest.raises(TypeError):
        d.execute("postgresql", PG, "SELECT 1 LIMIT 1")


def test_runs_connector_and_closes(executor) -> None:
    fake = FakeConnector()
    d = ExecutionDispatcher(lambda k, c: fake, executor=executor)
    out = d.execute("postgresql", PG, _approved(), Deadline(5))
    assert out.row_count == 1
    assert fake.calls == ["connect", "execute:SELECT 1 AS n LIMIT 1", "close"]


@pytest.mark.parametrize("kind", ["postgresql", "POSTGRESQL", "bigquery", "csv", "excel"])
def test_supported_kinds(kind) -> None:
    assert ExecutionDispatcher.supports(kind)


@pytest.mark.parametrize("kind", ["google_sheets", "mysql", "", None])
def test_unsupported_kind(kind, executor) -> None:
    d = ExecutionDispatcher(lambda k, c: FakeConnector(), executor=executor)
    with pytest.raises(UnsupportedDataSourceError):
        d.execute(kind, {}, _approved())


def test_deadline_cancels_and_raises_distinct_error(executor) -> None:
    fake = FakeConnector(block=threading.Event())
    d = ExecutionDispatcher(lambda k, c: fake, executor=executor)
    with pytest.raises(DeadlineExceededError):
        d.execute("csv", {"path": "x.csv"}, _approved(), Deadline(0.05))
    assert "cancel" in fake.calls


def test_connector_failure_is_wrapped(executor) -> None:
    fake = FakeConnector(error=RuntimeError("relation does not exist"))
    d = ExecutionDispatcher(lambda k, c: fake, executor=executor)
    with pytest.raises(ConnectorError) as exc:
        d.execute("postgresql", PG, _approved())
    assert "relation does not exist" in str(exc.value)
    assert fake.calls[-1] == "close"


# ---------------------------------------------------------------------------
# Typed configs
# ---------------------------------------------------------------------------


def test_parse_postgres_config_accepts_legacy_ssl_key() -> None:
    cfg = parse_connection_config("postgresql", {**PG, "port": "6543", "ssl_mode": "require"})
    assert isinstance(cfg, PostgresConnectionConfig)
    assert cfg.port == 6543
    assert cfg.sslmode == "require"


def test_parse_config_rejects_unknown_fields() -> None:
    with pytest.raises(InputError):
        parse_connection_config("postgresql", {**PG, "sql": "DROP TABLE x"})


def test_parse_config_missing_required() -> None:
    with pytest.raises(InputError):
        parse_connection_config("bigquery", {"project_id": "p"})


def test_parse_config_by_kind() -> None:
    assert isinstance(parse_connection_config("bigquery", {"project_id": "p", "dataset": "d"}), BigQueryConnectionConfig)
    assert isinstance(parse_connection_config("excel", {"path": "/data/x.csv"}), FileConnectionConfig)
    with pytest.raises(InputError):
        parse_connection_config("csv", {"path": "/data/x.xlsx", "format": "xlsx"})


def test_jsonable_driver_values() -> None:
    import datetime as dt
    import decimal

    assert jsonable(decimal.Decimal("1.5")) == 1.5
    assert jsonable(dt.date(2024, 1, 15)) == "2024-01-15"
    assert jsonable({"a": [decimal.Decimal("2")]}) == {"a": [2.0]}


# ---------------------------------------------------------------------------
# File connector (duckdb, real file)
# ---------------------------------------------------------------------------


def test_file_connector_end_to_end(tmp_path, executor) -> None:
    path = tmp_path / "sales.csv"
    path.write_text("id,region,amount\n1,EU,10.5\n2,US,20\n3,EU,4.5\n")
    config = {"path": str(path)}

    conn = create_connector("csv", config)
    assert isinstance(conn, FileConnector)
    conn.connect()
    try:
        (table,) = conn.get_schema()
        assert table["name"] == "sales"
        assert table["row_count"] == 3
        assert [c["name"] for c in table["columns"]] == ["id", "region", "amount"]
    finally:
        conn.close()

    d = ExecutionDispatcher(executor=executor)
    approved = _approved("SELECT region, SUM(amount) AS total FROM sales GROUP BY region ORDER BY region LIMIT 10")
    out = d.execute("csv", config, approved, Deadline(10))
    assert [c["name"] for c in out.columns] == ["region", "total"]
    assert out.data == [{"region": "EU", "total": 15.0}, {"region": "US", "total": 20.0}]
    assert out.row_count == 2


def test_file_connector_missing_file(tmp_path, executor) -> None:
    d = ExecutionDispatcher(executor=executor)
    with pytest.raises(ConnectorError):
        d.execute("csv", {"path": str(tmp_path / "nope.csv")}, _approved())
