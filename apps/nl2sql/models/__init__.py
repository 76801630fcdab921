"""SQLAlchemy models. User-owned tables carry user_id; queries MUST filter by owner and deleted_at."""

from apps.nl2sql.models.base import Base
from apps.nl2sql.models.data_source import DataSource, DataSourceSchema
from apps.nl2sql.models.definitions import BusinessGlossary, KPIDefinition
from apps.nl2sql.models.nl2sql_query import NL2SQLQuery, QueryResult
from apps.nl2sql.models.schema_embedding import SchemaEmbedding

__all__ = [
    "Base",
    "BusinessGlossary",
    "DataSource",
    "DataSourceSchema",
    "KPIDefinition",
    "NL2SQLQuery",
    "QueryResult",
    "SchemaEmbedding",
]
