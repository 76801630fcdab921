"""Schema sync with a patched repo and an in-memory index: need-sync rule, skip-on-failure, sweep, discovery task."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from apps.nl2sql.models.data_source import DataSourceSchema
from apps.nl2sql.services.errors import DeadlineExceededError, NotFoundError
from apps.nl2sql.services.schema_sync import SchemaDiscoveryTask, SchemaSyncService, sync_needed
from apps.nl2sql.services.similarity import EmbeddingRecord, InMemorySimilarityIndex, SearchFilter

DIM = 4
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
REPO = "apps.nl2sql.services.schema_sync.repo"


class StubEmbedder:
    """Returns a unit vector; fails for any text containing one of fail_on."""

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.fail_on = fail_on

    def embed(self, texts):
        for t in texts:
            if any(f in t for f in self.fail_on):
                raise RuntimeError("embedding API unavailable")
        return [[1.0, 0.0, 0.0, 0.0] for _ in texts]


def _schema(sid: int, name: str, cols=("id", "amount")) -> DataSourceSchema:
    return DataSourceSchema(
        id=sid,
        data_source_id=1,
        name=name,
        columns=[{"name": c, "type": "integer"} for c in cols],
        row_count=10,
    )


def _service(index=None, embedder=None, **kw) -> SchemaSyncService:
    return SchemaSyncService(index=index or InMemorySimilarityIndex(dim=DIM), embedder=embedder or StubEmbedder(), **kw)


# ---------------------------------------------------------------------------
# Need-sync rule
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "schema_ts,embed_ts,expected",
    [
        (None, None, False),
        (None, T0, False),
        (T0, None, True),
        (T0 + timedelta(seconds=1), T0, True),
        (T0, T0, False),
        (T0, T0 + timedelta(seconds=1), False),
    ],
)
def test_sync_needed(schema_ts, embed_ts, expected) -> None:
    assert sync_needed(schema_ts, embed_ts) is expected


# ---------------------------------------------------------------------------
# sync_data_source
# ---------------------------------------------------------------------------


@patch(f"{REPO}.mark_data_source_synced")
@patch(f"{REPO}.get_active_schemas")
@patch(f"{REPO}.latest_embedding_update", return_value=T0)
@patch(f"{REPO}.latest_schema_update", return_value=T0)
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="warehouse"))
def test_up_to_date_source_is_skipped(_ds, _s, _e, mock_schemas, mock_mark) -> None:
    report = _service().sync_data_source(1)
    assert report.skipped is True
    mock_schemas.assert_not_called()
    mock_mark.assert_not_called()


@patch(f"{REPO}.mark_data_source_synced")
@patch(f"{REPO}.get_active_schemas")
@patch(f"{REPO}.latest_embedding_update", return_value=None)
@patch(f"{REPO}.latest_schema_update", return_value=T0)
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="warehouse"))
def test_failed_schema_is_skipped_others_embedded(_ds, _s, _e, mock_schemas, mock_mark) -> None:
    mock_schemas.return_value = [_schema(1, "sales"), _schema(2, "broken_table"), _schema(3, "regions")]
    index = InMemorySimilarityIndex(dim=DIM)
    report = _service(index, StubEmbedder(fail_on=("Table: broken_table",))).sync_data_source(1)

    assert report.skipped is False
    assert report.schemas_total == 3
    assert report.schemas_embedded == 2
    assert report.schemas_failed == ["broken_table"]
    # table + 2 columns for each of the two good schemas
    assert report.embeddings_created == 6
    names = {r.element_name for r in index.search([1, 0, 0, 0], SearchFilter(data_source_id=1), top_k=20)}
    assert "broken_table" not in names
    assert {"sales", "regions", "sales.amount"} <= names
    mock_mark.assert_called_once_with(1)


@patch(f"{REPO}.mark_data_source_synced")
@patch(f"{REPO}.get_active_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="warehouse"))
def test_force_resync_replaces_old_embeddings(_ds, mock_schemas, _mark) -> None:
    index = InMemorySimilarityIndex(dim=DIM)
    index.upsert([EmbeddingRecord(1, 99, "table", "dropped_table", "Table: dropped_table", [1, 0, 0, 0])])
    index.replace_definition(EmbeddingRecord(0, 0, "kpi", "revenue", "KPI: revenue", [1, 0, 0, 0]))
    mock_schemas.return_value = [_schema(1, "sales", cols=())]

    report = _service(index).sync_data_source(1, force=True)

    assert report.embeddings_created == 1
    assert index.count(1) == 1
    assert index.count(0) == 1


class SearchingEmbedder(StubEmbedder):
    """Records which tables a concurrent reader would see each time the sync embeds something."""

    def __init__(self, index):
        super().__init__()
        self.index = index
        self.seen: list[list[str]] = []

    def embed(self, texts):
        hits = self.index.search([1, 0, 0, 0], SearchFilter(data_source_id=1, element_types=("table",)), top_k=20)
        self.seen.append(sorted(r.element_name for r in hits))
        return super().embed(texts)


@patch(f"{REPO}.mark_data_source_synced")
@patch(f"{REPO}.get_active_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="warehouse"))
def test_search_during_sync_sees_the_old_source_intact(_ds, mock_schemas, _mark) -> None:
    index = InMemorySimilarityIndex(dim=DIM)
    index.upsert([EmbeddingRecord(1, 1, "table", "orders", "Table: orders", [1, 0, 0, 0])])
    index.upsert([EmbeddingRecord(1, 2, "table", "customers", "Table: customers", [1, 0, 0, 0])])
    mock_schemas.return_value = [_schema(1, "orders"), _schema(2, "customers")]
    embedder = SearchingEmbedder(index)

    _service(index, embedder).sync_data_source(1, force=True)

    assert embedder.seen
    assert all(seen == ["customers", "orders"] for seen in embedder.seen)
    hits = index.search([1, 0, 0, 0], SearchFilter(data_source_id=1, element_types=("table",)), top_k=20)
    assert sorted(r.element_name for r in hits) == ["customers", "orders"]


@patch(f"{REPO}.mark_data_source_synced")
@patch(f"{REPO}.get_active_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="warehouse"))
def test_concurrent_searches_see_old_or_new_source_never_a_mix(_ds, mock_schemas, _mark) -> None:
    index = InMemorySimilarityIndex(dim=DIM)
    index.upsert([EmbeddingRecord(1, 1, "table", "old_a", "Table: old_a", [1, 0, 0, 0])])
    index.upsert([EmbeddingRecord(1, 2, "table", "old_b", "Table: old_b", [1, 0, 0, 0])])
    mock_schemas.return_value = [_schema(i, f"new_{i}") for i in range(1, 6)]
    old = ["old_a", "old_b"]
    new = [f"new_{i}" for i in range(1, 6)]

    stop = threading.Event()
    seen: list[list[str]] = []

    def reader():
        f = SearchFilter(data_source_id=1, element_types=("table",))
        while not stop.is_set():
            seen.append(sorted(r.element_name for r in index.search([1, 0, 0, 0], f, top_k=20)))

    t = threading.Thread(target=reader)
    t.start()
    try:
        for _ in range(20):
            _service(index).sync_data_source(1, force=True)
    finally:
        stop.set()
        t.join(5)

    assert seen
    assert all(s in (old, new) for s in seen)


@patch(f"{REPO}.get_data_source", return_value=None)
def test_unknown_source_not_found(_ds) -> None:
    with pytest.raises(NotFoundError):
        _service().sync_data_source(404)


@patch(f"{REPO}.get_active_schemas", return_value=[_schema(1, "sales")])
@patch(f"{REPO}.latest_embedding_update", return_value=T0)
@patch(f"{REPO}.latest_schema_update", return_value=T0 + timedelta(hours=1))
def test_sync_status(_s, _e, _schemas) -> None:
    index = InMemorySimilarityIndex(dim=DIM)
    index.upsert([EmbeddingRecord(1, 1, "table", "sales", "Table: sales", [1, 0, 0, 0])])
    status = _service(index).get_sync_status(1)
    assert status.schema_count == 1
    assert status.embedding_count == 1
    assert status.last_sync_time == T0
    assert status.need_sync is True


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


@patch(f"{REPO}.list_active_data_sources")
def test_sweep_continues_past_failures(mock_list) -> None:
    mock_list.return_value = [SimpleNamespace(id=1), SimpleNamespace(id=2), SimpleNamespace(id=3)]
    svc = _service()

    def fake_sync(ds_id, force=False):
        if ds_id == 2:
            raise RuntimeError("connection refused")
        return SimpleNamespace(data_source_id=ds_id)

    with patch.object(svc, "sync_data_source", side_effect=fake_sync) as mock_sync:
        result = svc.sync_all_data_sources()

    assert [c.args[0] for c in mock_sync.call_args_list] == [1, 2, 3]
    assert [r.data_source_id for r in result.reports] == [1, 3]
    assert result.failed == {2: "connection refused"}


# ---------------------------------------------------------------------------
# Discovery task
# ---------------------------------------------------------------------------


@pytest.fixture
def executor():
    ex = ThreadPoolExecutor(max_workers=2)
    yield ex
    ex.shutdown(wait=False)


def _connector(tables=None, block: threading.Event | None = None, error: Exception | None = None):
    conn = MagicMock()

    def get_schema():
        if block is not None:
            block.wait(5)
        if error is not None:
            raise error
        return tables or []

    conn.get_schema.side_effect = get_schema
    conn.cancel.side_effect = lambda: block.set() if block is not None else None
    return conn


@patch(f"{REPO}.set_data_source_status")
@patch(f"{REPO}.replace_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="w", type="csv", config={"path": "x.csv"}))
def test_discovery_stores_tables_and_forces_sync(_ds, mock_replace, mock_status, executor) -> None:
    tables = [{"name": "sales", "columns": [{"name": "amount", "type": "DOUBLE"}], "row_count": 3}]
    conn = _connector(tables)
    dispatcher = MagicMock()
    dispatcher.connector_for.return_value = conn
    svc = _service(dispatcher=dispatcher, executor=executor)

    with patch.object(svc, "sync_data_source", return_value="report") as mock_sync:
        task = svc.discover_schema(1)
        assert task.wait(5) == "report"

    assert task.done() and task.error() is None
    mock_replace.assert_called_once_with(1, tables)
    mock_sync.assert_called_once_with(1, force=True)
    assert [c.args[1] for c in mock_status.call_args_list] == ["connecting", "active"]
    conn.close.assert_called_once()


@patch(f"{REPO}.set_data_source_status")
@patch(f"{REPO}.replace_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="w", type="postgresql", config={}))
def test_discovery_error_is_captured_on_task(_ds, mock_replace, mock_status, executor) -> None:
    dispatcher = MagicMock()
    dispatcher.connector_for.return_value = _connector(error=RuntimeError("auth failed"))
    task = _service(dispatcher=dispatcher, executor=executor).discover_schema(1)

    with pytest.raises(RuntimeError, match="auth failed"):
        task.wait(5)
    assert isinstance(task.error(), RuntimeError)
    mock_replace.assert_not_called()
    assert mock_status.call_args_list[-1].args == (1, "error")


@patch(f"{REPO}.set_data_source_status")
@patch(f"{REPO}.replace_schemas")
@patch(f"{REPO}.get_data_source", return_value=SimpleNamespace(id=1, name="w", type="csv", config={}))
def test_discovery_wait_timeout_then_cancel(_ds, _replace, _status, executor) -> None:
    block = threading.Event()
    conn = _connector(block=block)
    dispatcher = MagicMock()
    dispatcher.connector_for.return_value = conn
    svc = _service(dispatcher=dispatcher, executor=executor)

    with patch.object(svc, "sync_data_source", return_value="report"):
        task = svc.discover_schema(1)
        with pytest.raises(DeadlineExceededError):
            task.wait(0.05)
        assert not task.done()
        assert task.cancel() is True
        conn.cancel.assert_called_once()
        task.wait(5)
    assert task.done()


def test_unstarted_task_cancels_future() -> None:
    task = SchemaDiscoveryTask(7)
    assert task.cancel() is True
    assert task.cancelled()
    assert task.done()
