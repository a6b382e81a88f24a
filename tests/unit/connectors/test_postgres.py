"""Unit tests for the PostgreSQL connector and connector factory"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from tinypivot_api.connectors import ConnectorUnavailable, PostgresConnector, create_connector
from tinypivot_api.core.errors import ConnectorError
from tinypivot_api.models.enums import ColumnType, DatasourceType


@pytest.fixture
def conn():
    connection = AsyncMock()
    connection.close = AsyncMock()
    return connection


@pytest.fixture
def mock_connect(conn):
    with patch("tinypivot_api.connectors.postgres.asyncpg.connect", new_callable=AsyncMock) as connect:
        connect.return_value = conn
        yield connect


@pytest.fixture
def connector() -> PostgresConnector:
    return PostgresConnector(
        connect_kwargs={"host": "db.example", "port": 5432, "database": "sales", "user": "u", "password": "p"},
        schemas=["public"],
        connect_timeout=5,
        statement_timeout_ms=15000,
    )


class TestFromDatasource:
    def test_defaults_and_credentials(self, org_postgres):
        org_postgres.connection_config.port = None
        connector = PostgresConnector.from_datasource(org_postgres)

        assert connector.connect_kwargs["port"] == 5432
        assert connector.connect_kwargs["user"] == "reader"
        assert connector.connect_kwargs["password"] == "org-secret"
        assert connector.schemas == ["public"]


class TestOperations:
    async def test_probe_sets_statement_timeout_and_closes(self, connector, conn, mock_connect):
        conn.fetchrow.return_value = {"version": "PostgreSQL 16.1", "database": "sales"}

        probe = await connector.test_connection()

        assert probe.version == "PostgreSQL 16.1"
        assert probe.database == "sales"
        kwargs = mock_connect.call_args.kwargs
        assert kwargs["server_settings"] == {"statement_timeout": "15000"}
        assert kwargs["timeout"] == 5
        conn.close.assert_awaited_once()

    async def test_execute_returns_dict_rows(self, connector, conn, mock_connect):
        statement = MagicMock()
        statement.fetch = AsyncMock(return_value=[{"id": 1, "total": 9.5}])
        statement.get_attributes.return_value = [SimpleNamespace(name="id"), SimpleNamespace(name="total")]
        conn.prepare.return_value = statement

        rows = await connector.execute("SELECT id, total FROM orders LIMIT 10")

        assert rows.rows == [{"id": 1, "total": 9.5}]
        assert rows.columns == ["id", "total"]
        conn.close.assert_awaited_once()

    async def test_query_error_translated_and_closed(self, connector, conn, mock_connect):
        conn.prepare.side_effect = asyncpg.InterfaceError("cannot perform operation")

        with pytest.raises(ConnectorError) as exc_info:
            await connector.execute("SELECT 1")

        assert exc_info.value.message == "cannot perform operation"
        conn.close.assert_awaited_once()

    async def test_connect_failure(self, connector, mock_connect):
        mock_connect.side_effect = OSError("Connection refused")

        with pytest.raises(ConnectorError) as exc_info:
            await connector.list_tables()

        assert exc_info.value.message == "Connection failed: Connection refused"

    async def test_describe_groups_columns(self, connector, conn, mock_connect):
        conn.fetch.return_value = [
            {"table_name": "orders", "column_name": "id", "data_type": "integer", "is_nullable": "NO"},
            {"table_name": "orders", "column_name": "placed_at", "data_type": "timestamp with time zone", "is_nullable": "YES"},
            {"table_name": "customers", "column_name": "email", "data_type": "text", "is_nullable": "YES"},
        ]

        schemas = await connector.describe_tables(["orders", "customers"])

        assert [s.table for s in schemas] == ["orders", "customers"]
        assert schemas[0].columns[1].type == ColumnType.DATE
        assert not schemas[0].columns[0].nullable
        assert conn.fetch.call_args.args[1:] == (["public"], ["orders", "customers"])

    async def test_describe_nothing(self, connector, mock_connect):
        assert await connector.describe_tables([]) == []
        mock_connect.assert_not_called()


class TestCreateConnector:
    def test_postgres(self, org_postgres, settings):
        connector = create_connector(org_postgres, settings=settings)

        assert isinstance(connector, PostgresConnector)
        assert connector.statement_timeout_ms == settings.postgres_statement_timeout_ms

    def test_snowflake_without_driver(self, org_postgres, settings):
        datasource = org_postgres.model_copy(update={"type": DatasourceType.SNOWFLAKE})

        with patch("tinypivot_api.connectors.snowflake_available", return_value=False):
            result = create_connector(datasource, settings=settings)

        assert isinstance(result, ConnectorUnavailable)
        assert "snowflake-connector-python" in result.reason
