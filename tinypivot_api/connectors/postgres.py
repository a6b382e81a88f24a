"""
PostgreSQL connector

Opens a fresh asyncpg connection for every call and always closes it.
Statement timeout is set on the connection.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import asyncpg

from tinypivot_api.connectors.base import ProbeResult, RowSet, WarehouseConnector
from tinypivot_api.connectors.type_mapping import map_postgres_type
from tinypivot_api.core.errors import ConnectorError
from tinypivot_api.models.models import ColumnInfo, DatasourceWithCredentials, TableInfo, TableSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LIST_TABLES_SQL = """
    SELECT table_name, table_schema
    FROM information_schema.tables
    WHERE table_schema = ANY($1::text[])
      AND table_type = 'BASE TABLE'
    ORDER BY table_schema, table_name
"""

_COLUMNS_SQL = """
    SELECT c.table_name, c.column_name, c.data_type, c.is_nullable
    FROM information_schema.columns c
    JOIN information_schema.tables t
      ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema = ANY($1::text[])
      AND t.table_type = 'BASE TABLE'
      AND ($2::text[] IS NULL OR c.table_name = ANY($2::text[]))
    ORDER BY c.table_name, c.ordinal_position
"""


class PostgresConnector(WarehouseConnector):
    """Connector for PostgreSQL datasources and the default database."""

    def __init__(
        self,
        connect_kwargs: dict[str, Any],
        schemas: list[str],
        connect_timeout: float = 10.0,
        statement_timeout_ms: int = 30000,
    ):
        self.connect_kwargs = connect_kwargs
        self.schemas = schemas
        self.connect_timeout = connect_timeout
        self.statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_datasource(
        cls,
        datasource: DatasourceWithCredentials,
        connect_timeout: float = 10.0,
        statement_timeout_ms: int = 30000,
    ) -> "PostgresConnector":
        config = datasource.connection_config
        credentials = datasource.credentials
        return cls(
            connect_kwargs={
                "host": config.host,
                "port": config.port or 5432,
                "database": config.database or "postgres",
                "user": credentials.username or config.user,
                "password": credentials.password,
            },
            schemas=[config.schema_name or "public"],
            connect_timeout=connect_timeout,
            statement_timeout_ms=statement_timeout_ms,
        )

    @classmethod
    def from_dsn(
        cls,
        dsn: str,
        schemas: list[str],
        connect_timeout: float = 10.0,
        statement_timeout_ms: int = 30000,
    ) -> "PostgresConnector":
        return cls(
            connect_kwargs={"dsn": dsn},
            schemas=schemas,
            connect_timeout=connect_timeout,
            statement_timeout_ms=statement_timeout_ms,
        )

    async def _connect(self) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(
                **self.connect_kwargs,
                timeout=self.connect_timeout,
                server_settings={"statement_timeout": str(self.statement_timeout_ms)},
            )
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise ConnectorError(f"Connection failed: {e}") from e

    async def _with_connection(self, operation: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        conn = await self._connect()
        try:
            return await operation(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise ConnectorError(str(e)) from e
        finally:
            await conn.close()

    async def test_connection(self) -> ProbeResult:
        async def probe(conn: asyncpg.Connection) -> ProbeResult:
            row = await conn.fetchrow("SELECT version() AS version, current_database() AS database")
            return ProbeResult(version=row["version"], database=row["database"])

        return await self._with_connection(probe)

    async def execute(self, sql: str) -> RowSet:
        async def run(conn: asyncpg.Connection) -> RowSet:
            statement = await conn.prepare(sql)
            records = await statement.fetch()
            columns = [attribute.name for attribute in statement.get_attributes()]
            return RowSet(rows=[dict(record) for record in records], columns=columns)

        return await self._with_connection(run)

    async def list_tables(self) -> list[TableInfo]:
        async def run(conn: asyncpg.Connection) -> list[TableInfo]:
            records = await conn.fetch(_LIST_TABLES_SQL, self.schemas)
            return [
                TableInfo(name=record["table_name"], schema_name=record["table_schema"])
                for record in records
            ]

        return await self._with_connection(run)

    async def _describe(self, tables: list[str] | None) -> list[TableSchema]:
        async def run(conn: asyncpg.Connection) -> list[TableSchema]:
            records = await conn.fetch(_COLUMNS_SQL, self.schemas, tables)
            return _group_columns(
                (r["table_name"], r["column_name"], r["data_type"], r["is_nullable"]) for r in records
            )

        return await self._with_connection(run)

    async def describe_tables(self, tables: list[str]) -> list[TableSchema]:
        if not tables:
            return []
        return await self._describe(tables)

    async def describe_all_tables(self) -> list[TableSchema]:
        return await self._describe(None)


def _group_columns(rows: Any) -> list[TableSchema]:
    schemas: dict[str, TableSchema] = {}
    for table, column, data_type, is_nullable in rows:
        schema = schemas.setdefault(table, TableSchema(table=table, columns=[]))
        schema.columns.append(ColumnInfo(
            name=column,
            type=map_postgres_type(data_type),
            nullable=str(is_nullable).upper() == "YES",
        ))
    return list(schemas.values())
