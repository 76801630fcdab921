"""
Data source connectors. Configs are typed per kind and validated before a connector is built.

Every connector exposes connect / test_connection / get_schema / get_data / execute / cancel / close.
Schema dicts: {name, columns: [{name, type, nullable, primary_key}], row_count}.
Results: TabularResult(columns=[{name, type, nullable}], data=[{col: value}], row_count).
"""

import base64
import datetime as dt
import decimal
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import create_engine, literal_column, select, table, text
from sqlalchemy.engine import URL, Engine

from apps.nl2sql.services.errors import ConnectorError, InputError, UnsupportedDataSourceError

logger = logging.getLogger(__name__)

KIND_POSTGRESQL = "postgresql"
KIND_BIGQUERY = "bigquery"
KIND_CSV = "csv"
KIND_EXCEL = "excel"


# ---------------------------------------------------------------------------
# Typed connection configs
# ---------------------------------------------------------------------------


class PostgresConnectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    host: str = Field(..., min_length=1)
    port: int = Field(5432, gt=0, lt=65536)
    database: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = ""
    sslmode: str = Field("disable", validation_alias=AliasChoices("sslmode", "ssl_mode"))
    schema_name: str = "public"


class BigQueryConnectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(..., min_length=1)
    dataset: str = Field(..., min_length=1)
    credentials_path: str | None = None
    location: str | None = None


class FileConnectionConfig(BaseModel):
    """Local tabular file served through an in-process duckdb view named table_name."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1)
    format: Literal["csv", "parquet"] = "csv"
    table_name: str | None = None

    def view_name(self) -> str:
        return self.table_name or Path(self.path).stem.replace("-", "_").replace(" ", "_").lower()


ConnectionConfig = PostgresConnectionConfig | BigQueryConnectionConfig | FileConnectionConfig

CONFIG_TYPES: dict[str, type[BaseModel]] = {
    KIND_POSTGRESQL: PostgresConnectionConfig,
    KIND_BIGQUERY: BigQueryConnectionConfig,
    KIND_CSV: FileConnectionConfig,
    KIND_EXCEL: FileConnectionConfig,
}


def normalize_kind(kind: str | None) -> str:
    return (kind or "").strip().lower()


def parse_connection_config(kind: str, raw: dict[str, Any] | BaseModel | None) -> ConnectionConfig:
    """Validate raw JSON config for kind. Unknown kind -> UnsupportedDataSourceError; bad config -> InputError."""
    model = CONFIG_TYPES.get(normalize_kind(kind))
    if model is None:
        raise UnsupportedDataSourceError(f"unsupported data source type: {kind}")
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise InputError(f"invalid {normalize_kind(kind)} connection config: {e.errors(include_url=False)}") from e


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TabularResult:
    columns: list[dict[str, Any]] = field(default_factory=list)
    data: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


def jsonable(value: Any) -> Any:
    """Coerce driver values (Decimal, datetimes, UUID, bytes) into JSON-storable ones."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return str(value)


def _tabular(columns: list[dict[str, Any]], rows: list[tuple]) -> TabularResult:
    names = [c["name"] for c in columns]
    data = [{n: jsonable(v) for n, v in zip(names, row)} for row in rows]
    return TabularResult(columns=columns, data=data, row_count=len(data))


@runtime_checkable
class Connector(Protocol):
    def connect(self) -> None: ...

    def test_connection(self) -> None: ...

    def get_schema(self) -> list[dict[str, Any]]: ...

    def get_data(self, table_name: str, limit: int) -> TabularResult: ...

    def execute(self, sql: str, timeout: float | None = None) -> TabularResult: ...

    def cancel(self) -> None: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


_PG_COLUMNS_SQL = text(
    """
    SELECT c.table_name, c.column_name, c.data_type, c.is_nullable,
           (tc.constraint_type = 'PRIMARY KEY') AS is_pk
    FROM information_schema.columns c
    JOIN information_schema.tables t
      ON t.table_schema = c.table_schema AND t.table_name = c.table_name AND t.table_type = 'BASE TABLE'
    LEFT JOIN information_schema.key_column_usage k
      ON k.table_schema = c.table_schema AND k.table_name = c.table_name AND k.column_name = c.column_name
    LEFT JOIN information_schema.table_constraints tc
      ON tc.constraint_name = k.constraint_name AND tc.table_schema = k.table_schema
     AND tc.constraint_type = 'PRIMARY KEY'
    WHERE c.table_schema = :schema
    ORDER BY c.table_name, c.ordinal_position
    """
)

_PG_ROW_ESTIMATE_SQL = text(
    """
    SELECT c.relname, GREATEST(c.reltuples, 0)::bigint
    FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = :schema AND c.relkind = 'r'
    """
)


class PostgresConnector:
    """SQLAlchemy engine per connector; each execute runs in a READ ONLY transaction with statement_timeout."""

    def __init__(self, config: PostgresConnectionConfig) -> None:
        self.config = config
        self._engine: Engine | None = None
        self._active = None
        self._lock = threading.Lock()

    def _url(self) -> URL:
        c = self.config
        return URL.create(
            "postgresql+psycopg2",
            username=c.username,
            password=c.password or None,
            host=c.host,
            port=c.port,
            database=c.database,
            query={"sslmode": c.sslmode},
        )

    def connect(self) -> None:
        if self._engine is None:
            self._engine = create_engine(self._url(), pool_pre_ping=True, pool_size=1, max_overflow=0)

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise ConnectorError("no active connection")
        return self._engine

    def test_connection(self) -> None:
        with self._require_engine().connect() as conn:
            conn.execute(text("SELECT 1"))

    def get_schema(self) -> list[dict[str, Any]]:
        engine = self._require_engine()
        tables: dict[str, dict[str, Any]] = {}
        with engine.connect() as conn:
            for tname, cname, dtype, nullable, is_pk in conn.execute(
                _PG_COLUMNS_SQL, {"schema": self.config.schema_name}
            ):
                t = tables.setdefault(tname, {"name": tname, "columns": [], "row_count": None})
                t["columns"].append(
                    {"name": cname, "type": dtype, "nullable": nullable == "YES", "primary_key": bool(is_pk)}
                )
            for tname, estimate in conn.execute(_PG_ROW_ESTIMATE_SQL, {"schema": self.config.schema_name}):
                if tname in tables:
                    tables[tname]["row_count"] = int(estimate)
        return list(tables.values())

    def get_data(self, table_name: str, limit: int) -> TabularResult:
        stmt = (
            select(literal_column("*"))
            .select_from(table(table_name, schema=self.config.schema_name))
            .limit(limit)
        )
        with self._require_engine().connect() as conn:
            res = conn.execute(stmt)
            columns = [{"name": k, "type": "", "nullable": True} for k in res.keys()]
            return _tabular(columns, [tuple(r) for r in res.fetchall()])

    def execute(self, sql: str, timeout: float | None = None) -> TabularResult:
        engine = self._require_engine()
        with engine.connect() as conn:
            with conn.begin():
                conn.execute(text("SET TRANSACTION READ ONLY"))
                if timeout:
                    conn.execute(text(f"SET LOCAL statement_timeout = {max(1, int(timeout * 1000))}"))
                with self._lock:
                    self._active = conn.connection.dbapi_connection
                try:
                    res = conn.execute(text(sql))
                    columns = [
                        {"name": d[0], "type": str(d[1]), "nullable": True}
                        for d in (res.cursor.description or [])
                    ]
                    return _tabular(columns, [tuple(r) for r in res.fetchall()])
                finally:
                    with self._lock:
                        self._active = None

    def cancel(self) -> None:
        with self._lock:
            active = self._active
        if active is not None:
            active.cancel()

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


# ---------------------------------------------------------------------------
# BigQuery
# ---------------------------------------------------------------------------


class BigQueryConnector:
    """google-cloud-bigquery client, imported on connect (optional extra)."""

    def __init__(self, config: BigQueryConnectionConfig) -> None:
        self.config = config
        self._client = None
        self._job = None

    def connect(self) -> None:
        if self._client is not None:
            return
        from google.cloud import bigquery

        c = self.config
        if c.credentials_path:
            self._client = bigquery.Client.from_service_account_json(
                c.credentials_path, project=c.project_id, location=c.location
            )
        else:
            self._client = bigquery.Client(project=c.project_id, location=c.location)

    def _require_client(self):
        if self._client is None:
            raise ConnectorError("no active connection")
        return self._client

    def _dataset_ref(self) -> str:
        return f"{self.config.project_id}.{self.config.dataset}"

    def test_connection(self) -> None:
        self._require_client().get_dataset(self._dataset_ref())

    def get_schema(self) -> list[dict[str, Any]]:
        client = self._require_client()
        out: list[dict[str, Any]] = []
        for item in client.list_tables(self._dataset_ref()):
            t = client.get_table(item.reference)
            out.append(
                {
                    "name": t.table_id,
                    "description": t.description,
                    "columns": [
                        {"name": f.name, "type": f.field_type, "nullable": f.mode != "REQUIRED", "primary_key": False}
                        for f in t.schema
                    ],
                    "row_count": t.num_rows,
                }
            )
        return out

    def get_data(self, table_name: str, limit: int) -> TabularResult:
        client = self._require_client()
        rows = client.list_rows(f"{self._dataset_ref()}.{table_name}", max_results=limit)
        return self._rows_to_result(rows)

    def execute(self, sql: str, timeout: float | None = None) -> TabularResult:
        from google.cloud import bigquery

        client = self._require_client()
        job_config = bigquery.QueryJobConfig(default_dataset=self._dataset_ref())
        if timeout:
            job_config.job_timeout_ms = max(1, int(timeout * 1000))
        self._job = client.query(sql, job_config=job_config, location=self.config.location)
        try:
            return self._rows_to_result(self._job.result(timeout=timeout))
        finally:
            self._job = None

    @staticmethod
    def _rows_to_result(rows) -> TabularResult:
        columns = [
            {"name": f.name, "type": f.field_type, "nullable": f.mode != "REQUIRED"} for f in (rows.schema or [])
        ]
        return _tabular(columns, [tuple(r.values()) for r in rows])

    def cancel(self) -> None:
        job = self._job
        if job is not None:
            job.cancel()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


# ---------------------------------------------------------------------------
# Local files (duckdb)
# ---------------------------------------------------------------------------


def _sql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class FileConnector:
    """In-memory duckdb database with one view over the configured csv/parquet file."""

    def __init__(self, config: FileConnectionConfig) -> None:
        self.config = config
        self._conn = None

    def connect(self) -> None:
        if self._conn is not None:
            return
        import duckdb

        path = Path(self.config.path)
        if not path.exists():
            raise ConnectorError(f"file not found: {self.config.path}")
        reader = "read_parquet" if self.config.format == "parquet" else "read_csv_auto"
        conn = duckdb.connect(":memory:")
        conn.execute(
            f"CREATE VIEW {_quote_ident(self.config.view_name())} AS "
            f"SELECT * FROM {reader}({_sql_string(str(path))})"
        )
        self._conn = conn

    def _require_conn(self):
        if self._conn is None:
            raise ConnectorError("no active connection")
        return self._conn

    def test_connection(self) -> None:
        self._require_conn().execute("SELECT 1").fetchall()

    def get_schema(self) -> list[dict[str, Any]]:
        conn = self._require_conn()
        name = self.config.view_name()
        cols = conn.execute(
            "SELECT column_name, data_type, is_nullable FROM information_schema.columns "
            "WHERE table_name = ? ORDER BY ordinal_position",
            [name],
        ).fetchall()
        (count,) = conn.execute(f"SELECT COUNT(*) FROM {_quote_ident(name)}").fetchone()
        return [
            {
                "name": name,
                "columns": [
                    {"name": c, "type": t, "nullable": n == "YES", "primary_key": False} for c, t, n in cols
                ],
                "row_count": int(count),
            }
        ]

    def get_data(self, table_name: str, limit: int) -> TabularResult:
        return self._run(f"SELECT * FROM {_quote_ident(table_name)} LIMIT {int(limit)}")

    def execute(self, sql: str, timeout: float | None = None) -> TabularResult:
        return self._run(sql)

    def _run(self, sql: str) -> TabularResult:
        cur = self._require_conn().execute(sql)
        columns = [{"name": d[0], "type": str(d[1]), "nullable": True} for d in (cur.description or [])]
        return _tabular(columns, cur.fetchall())

    def cancel(self) -> None:
        if self._conn is not None:
            self._conn.interrupt()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


CONNECTOR_TYPES: dict[type[BaseModel], type] = {
    PostgresConnectionConfig: PostgresConnector,
    BigQueryConnectionConfig: BigQueryConnector,
    FileConnectionConfig: FileConnector,
}


def create_connector(kind: str, config: dict[str, Any] | BaseModel | None) -> Connector:
    """Validate config for kind and build the matching connector (not yet connected)."""
    typed = parse_connection_config(kind, config)
    return CONNECTOR_TYPES[type(typed)](typed)
