"""
Pytest fixtures for TinyPivot API unit tests.

This module provides:
1. Test environment variables (set before settings are first read)
2. A credential vault with a fixed server key
3. A fake warehouse connector and a mocked AsyncSession
4. Sample datasources for both tiers
"""

import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# ==================== CONFIGURATION ====================

TEST_SERVER_KEY = "test-server-key-for-testing-must-be-32-chars"

os.environ.setdefault("TINYPIVOT_ENVIRONMENT", "testing")
os.environ.setdefault("TINYPIVOT_CREDENTIAL_ENCRYPTION_KEY", TEST_SERVER_KEY)
os.environ.setdefault("TINYPIVOT_ORG_DATASOURCES", "[]")

from tinypivot_api.config import Settings, get_settings  # noqa: E402
from tinypivot_api.connectors.base import ProbeResult, RowSet, WarehouseConnector  # noqa: E402
from tinypivot_api.core.security import CredentialService  # noqa: E402
from tinypivot_api.models.enums import AuthMethod, DatasourceTier, DatasourceType  # noqa: E402
from tinypivot_api.models.models import (  # noqa: E402
    ConnectionConfig,
    DatasourceCredentials,
    DatasourceWithCredentials,
    TableInfo,
    TableSchema,
)


# ==================== FAKES ====================


class FakeConnector(WarehouseConnector):
    """In-memory connector recording every call."""

    def __init__(
        self,
        tables: list[str] | None = None,
        rows: list[dict[str, Any]] | None = None,
        probe: ProbeResult | None = None,
        error: Exception | None = None,
    ):
        self.tables = tables if tables is not None else ["orders", "customers"]
        self.rows = rows if rows is not None else []
        self.probe = probe or ProbeResult(version="16.1", database="analytics")
        self.error = error
        self.executed: list[str] = []
        self.closed = False

    async def test_connection(self) -> ProbeResult:
        if self.error:
            raise self.error
        return self.probe

    async def execute(self, sql: str) -> RowSet:
        self.executed.append(sql)
        if self.error:
            raise self.error
        columns = list(self.rows[0].keys()) if self.rows else []
        return RowSet(rows=list(self.rows), columns=columns)

    async def list_tables(self) -> list[TableInfo]:
        return [TableInfo(name=name, schema_name="public") for name in self.tables]

    async def describe_tables(self, tables: list[str]) -> list[TableSchema]:
        return [TableSchema(table=name, columns=[]) for name in tables]

    async def describe_all_tables(self) -> list[TableSchema]:
        return [TableSchema(table=name, columns=[]) for name in self.tables]

    async def close(self) -> None:
        self.closed = True


# ==================== FIXTURES ====================


@pytest.fixture
def settings() -> Settings:
    """Fresh settings for the test environment."""
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def vault() -> CredentialService:
    """Credential vault with the test server key."""
    return CredentialService(TEST_SERVER_KEY)


@pytest.fixture
def mock_db() -> AsyncMock:
    """Mocked AsyncSession. Configure execute() per test."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def make_connector():
    """FakeConnector class, for tests that need custom tables or errors."""
    return FakeConnector


@pytest.fixture
def org_postgres() -> DatasourceWithCredentials:
    """Organization-tier Postgres datasource."""
    return DatasourceWithCredentials(
        id="org-analytics",
        name="Analytics",
        type=DatasourceType.POSTGRES,
        tier=DatasourceTier.ORG,
        auth_method=AuthMethod.PASSWORD,
        env_prefix="ANALYTICS",
        connection_config=ConnectionConfig(host="db.internal", port=5432, database="analytics", user="reader"),
        credentials=DatasourceCredentials(username="reader", password="org-secret"),
    )
