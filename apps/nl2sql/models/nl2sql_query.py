"""nl2sql_queries and query_results tables.

Status lifecycle: pending -> {failed | completed}; completed (can_execute) -> running -> {completed | failed}.
Transitions go through transition_to(); anything else raises InvalidTransitionError.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from apps.nl2sql.models.base import Base

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

QUERY_TYPES = ("analytics", "report", "explore")
DEFAULT_QUERY_TYPE = "analytics"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset({STATUS_RUNNING}),
    STATUS_RUNNING: frozenset({STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_FAILED: frozenset(),
}


class InvalidTransitionError(ValueError):
    pass


class NL2SQLQuery(Base):
    __tablename__ = "nl2sql_queries"
    __table_args__ = (
        Index("ix_nl2sql_queries_user_created", "user_id", "created_at", postgresql_ops={"created_at": "DESC"}),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data_source_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("data_sources.id"), nullable=False)
    nl_query: Mapped[str] = mapped_column(Text, nullable=False)
    generated_sql: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING)
    query_type: Mapped[str] = mapped_column(String(32), nullable=False, default=DEFAULT_QUERY_TYPE)
    can_execute: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rows_returned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    results = relationship("QueryResult", back_populates="query")

    def transition_to(self, status: str) -> None:
        current = self.status or STATUS_PENDING
        if status not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(f"query {self.id}: {current} -> {status} not allowed")
        self.status = status

    def mark_failed(self, message: str) -> None:
        self.transition_to(STATUS_FAILED)
        self.error_message = message

    @property
    def is_executable(self) -> bool:
        return bool(self.generated_sql) and self.status == STATUS_COMPLETED and bool(self.can_execute)


class QueryResult(Base):
    __tablename__ = "query_results"
    __table_args__ = (Index("ix_query_results_query", "query_id", "id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    query_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("nl2sql_queries.id"), nullable=False)
    columns: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    data: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    query = relationship("NL2SQLQuery", back_populates="results")
