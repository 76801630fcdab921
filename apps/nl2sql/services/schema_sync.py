"""
Schema sync: keep schema_embeddings in line with data_source_schemas.

sync_data_source: skip when embeddings are newer than schemas (unless force); otherwise embed every
active schema, then replace the source's embeddings in one step (index.replace_source). Searches see
either the old set or the new one. A schema that fails to embed is logged and skipped.
sync_all_data_sources runs the same per source, sequentially, continuing past failures.
discover_schema: read tables from the live connector, store them, then force a sync. Runs as a
SchemaDiscoveryTask that callers can wait on or cancel.
"""

import logging
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime

from apps.nl2sql.schemas.responses import SyncReport, SyncStatusResponse
from apps.nl2sql.services import repo
from apps.nl2sql.services.connectors import Connector
from apps.nl2sql.services.dispatcher import ExecutionDispatcher, get_dispatcher
from apps.nl2sql.services.embedding_provider import EmbeddingProvider, get_embedding_provider
from apps.nl2sql.services.errors import DeadlineExceededError, EmbeddingError, NotFoundError
from apps.nl2sql.services.schema_embedding import embed_schema
from apps.nl2sql.services.similarity import EmbeddingRecord, SimilarityIndex, get_similarity_index

logger = logging.getLogger(__name__)


def sync_needed(latest_schema: datetime | None, latest_embedding: datetime | None) -> bool:
    """True when schemas exist and were updated after the newest embedding (or nothing is embedded yet)."""
    if latest_schema is None:
        return False
    if latest_embedding is None:
        return True
    return latest_schema > latest_embedding


@dataclass
class SweepResult:
    reports: list[SyncReport] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class SchemaDiscoveryTask:
    """Handle on a background discovery. Errors stay on the future and surface from wait()/error()."""

    def __init__(self, data_source_id: int, future: Future | None = None) -> None:
        self.data_source_id = data_source_id
        self._future: Future = future if future is not None else Future()
        self._connector: Connector | None = None

    def _attach(self, connector: Connector | None) -> None:
        self._connector = connector

    def wait(self, timeout: float | None = None) -> SyncReport:
        """Block until done. Raises the discovery error, or DeadlineExceededError if timeout elapses first."""
        try:
            return self._future.result(timeout=timeout)
        except FutureTimeoutError:
            raise DeadlineExceededError(
                f"timeout: schema discovery for data source {self.data_source_id} exceeded deadline"
            ) from None

    def cancel(self) -> bool:
        """Cancel if not started; otherwise interrupt the connector. True if cancellation was requested."""
        if self._future.cancel():
            return True
        if self._future.done():
            return False
        connector = self._connector
        if connector is not None:
            connector.cancel()
            return True
        return False

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def error(self) -> BaseException | None:
        if not self._future.done():
            return None
        try:
            return self._future.exception(timeout=0)
        except CancelledError as e:
            return e


class SchemaSyncService:
    def __init__(
        self,
        index: SimilarityIndex | None = None,
        embedder: EmbeddingProvider | None = None,
        dispatcher: ExecutionDispatcher | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.index = index or get_similarity_index()
        self.embedder = embedder or get_embedding_provider()
        self.dispatcher = dispatcher
        self.executor = executor

    def need_sync(self, data_source_id: int) -> bool:
        return sync_needed(repo.latest_schema_update(data_source_id), repo.latest_embedding_update(data_source_id))

    def sync_data_source(self, data_source_id: int, force: bool = False) -> SyncReport:
        ds = repo.get_data_source(data_source_id)
        if ds is None:
            raise NotFoundError(f"data source {data_source_id} not found")

        if not force and not self.need_sync(data_source_id):
            logger.info("Data source %s is already up to date", data_source_id)
            return SyncReport(data_source_id=data_source_id, skipped=True)

        logger.info("Starting sync for data source %s (%s)", data_source_id, ds.name)
        schemas = repo.get_active_schemas(data_source_id)

        report = SyncReport(data_source_id=data_source_id, schemas_total=len(schemas))
        records: list[EmbeddingRecord] = []
        for schema in schemas:
            try:
                records.extend(embed_schema(data_source_id, schema, self.embedder))
            except EmbeddingError as e:
                logger.warning("Skipping schema %s of data source %s: %s", schema.name, data_source_id, e)
                report.schemas_failed.append(schema.name)
                continue
            report.schemas_embedded += 1

        report.embeddings_created = self.index.replace_source(data_source_id, records)
        repo.mark_data_source_synced(data_source_id)
        logger.info(
            "Synced data source %s: %s/%s schemas, %s embeddings",
            data_source_id,
            report.schemas_embedded,
            report.schemas_total,
            report.embeddings_created,
        )
        return report

    def sync_all_data_sources(self, data_source_ids: list[int] | None = None, force: bool = False) -> SweepResult:
        result = SweepResult()
        for ds in repo.list_active_data_sources(data_source_ids):
            try:
                result.reports.append(self.sync_data_source(ds.id, force=force))
            except Exception as e:
                logger.error("Failed to sync data source %s: %s", ds.id, e)
                result.failed[ds.id] = str(e)
        return result

    def get_sync_status(self, data_source_id: int) -> SyncStatusResponse:
        latest_schema = repo.latest_schema_update(data_source_id)
        latest_embedding = repo.latest_embedding_update(data_source_id)
        return SyncStatusResponse(
            data_source_id=data_source_id,
            schema_count=len(repo.get_active_schemas(data_source_id)),
            embedding_count=self.index.count(data_source_id),
            last_sync_time=latest_embedding,
            need_sync=sync_needed(latest_schema, latest_embedding),
        )

    def discover_schema(self, data_source_id: int) -> SchemaDiscoveryTask:
        """Start discovery in the background and return its task handle."""
        executor = self.executor or _default_executor()
        task = SchemaDiscoveryTask(data_source_id)
        task._future = executor.submit(self._discover, data_source_id, task)
        return task

    def _discover(self, data_source_id: int, task: SchemaDiscoveryTask) -> SyncReport:
        ds = repo.get_data_source(data_source_id)
        if ds is None:
            raise NotFoundError(f"data source {data_source_id} not found")
        dispatcher = self.dispatcher or get_dispatcher()
        connector = dispatcher.connector_for(ds.type, ds.config)
        task._attach(connector)
        repo.set_data_source_status(data_source_id, "connecting")
        try:
            connector.connect()
            try:
                tables = connector.get_schema()
            finally:
                connector.close()
        except Exception:
            repo.set_data_source_status(data_source_id, "error")
            raise
        repo.replace_schemas(data_source_id, tables)
        repo.set_data_source_status(data_source_id, "active")
        logger.info("Discovered %s tables for data source %s", len(tables), data_source_id)
        return self.sync_data_source(data_source_id, force=True)


_executor: ThreadPoolExecutor | None = None


def _default_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="discovery")
    return _executor


def get_schema_sync_service() -> SchemaSyncService:
    return SchemaSyncService()
