"""
Default Database

Tables exposed directly from the application's own PostgreSQL database,
without a registered datasource. Which tables are visible is controlled by
the configured schemas and the include/exclude patterns.
"""

import fnmatch
import logging
import time

from tinypivot_api.config import Settings, get_settings
from tinypivot_api.connectors.base import WarehouseConnector
from tinypivot_api.connectors.postgres import PostgresConnector
from tinypivot_api.core.errors import (
    ConnectorError,
    QueryValidationError,
    TableNotAllowedError,
    sanitize_error_message,
)
from tinypivot_api.models.models import QueryResult, TableInfo, TableSchema
from tinypivot_api.services.sql_validation import ensure_limit, validate_sql

logger = logging.getLogger(__name__)


def _matches(table: str, pattern: str) -> bool:
    return fnmatch.fnmatch(table.lower(), pattern.lower())


def filter_tables(tables: list[str], include: list[str], exclude: list[str]) -> list[str]:
    """
    Apply include then exclude patterns, case-insensitively.

    An empty include list means every table is included.
    """
    filtered = tables
    if include:
        filtered = [t for t in filtered if any(_matches(t, p) for p in include)]
    if exclude:
        filtered = [t for t in filtered if not any(_matches(t, p) for p in exclude)]
    return filtered


class DefaultDatabase:
    """Read-only access to the filtered tables of the default database."""

    def __init__(
        self,
        connector: WarehouseConnector,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        descriptions: dict[str, str] | None = None,
        max_rows: int | None = None,
    ):
        self.connector = connector
        self.include = include or []
        self.exclude = exclude or []
        self.descriptions = descriptions or {}
        self.max_rows = max_rows

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DefaultDatabase":
        settings = settings or get_settings()
        return cls(
            connector=PostgresConnector.from_dsn(
                settings.default_database_dsn,
                schemas=settings.default_schema_list,
                connect_timeout=settings.postgres_connect_timeout,
                statement_timeout_ms=settings.postgres_statement_timeout_ms,
            ),
            include=settings.table_include_list,
            exclude=settings.table_exclude_list,
            descriptions=settings.table_description_map,
            max_rows=settings.default_max_rows,
        )

    async def allowed_tables(self) -> list[str]:
        tables = await self.connector.list_tables()
        return filter_tables([t.name for t in tables], self.include, self.exclude)

    async def list_tables(self) -> list[TableInfo]:
        return [
            TableInfo(name=name, description=self.descriptions.get(name))
            for name in await self.allowed_tables()
        ]

    async def get_schemas(self, tables: list[str]) -> list[TableSchema]:
        """
        Column schemas for the requested tables that are exposed.

        Raises:
            TableNotAllowedError: If none of the requested tables are exposed
        """
        allowed = {t.lower() for t in await self.allowed_tables()}
        requested = [t for t in tables if t.lower() in allowed]
        if not requested:
            raise TableNotAllowedError("None of the requested tables are allowed")
        return await self.connector.describe_tables(requested)

    async def get_all_schemas(self) -> list[TableSchema]:
        allowed = await self.allowed_tables()
        if not allowed:
            return []
        return await self.connector.describe_tables(allowed)

    async def query(self, sql: str, table: str) -> QueryResult:
        """
        Run a validated query scoped to one exposed table.

        Raises:
            TableNotAllowedError: If the table is not exposed
            QueryValidationError: If the validator rejects the SQL
        """
        allowed = await self.allowed_tables()
        if table.lower() not in {t.lower() for t in allowed}:
            raise TableNotAllowedError(f'Table "{table}" is not allowed')

        validation = validate_sql(sql, allowed)
        if not validation.valid:
            raise QueryValidationError(validation.error or "Invalid SQL")

        # One row past the cap tells a full result from a truncated one
        final_sql = ensure_limit(sql, self.max_rows + 1) if self.max_rows else sql

        start = time.perf_counter()
        try:
            rows = await self.connector.execute(final_sql)
        except ConnectorError as e:
            logger.warning(f"Default database query failed: {e.message}")
            return QueryResult(success=False, error=sanitize_error_message(e.message))

        data = rows.rows[:self.max_rows] if self.max_rows else rows.rows
        return QueryResult(
            success=True,
            data=data,
            row_count=len(data),
            truncated=bool(self.max_rows) and len(rows.rows) > self.max_rows,
            duration=int((time.perf_counter() - start) * 1000),
            columns=rows.columns,
        )
