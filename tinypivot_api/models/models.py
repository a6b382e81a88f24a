"""
Pydantic API Schemas

Request/response models for the datasource API. Field names are snake_case
in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from tinypivot_api.models.enums import AuthMethod, ColumnType, DatasourceTier, DatasourceType, TestResult


# =============================================================================
# Datasource Schemas
# =============================================================================


class ConnectionConfig(BaseModel):
    """Non-secret connection parameters. Safe to return to clients."""
    host: str | None = None
    port: int | None = None
    database: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    account: str | None = None
    warehouse: str | None = None
    role: str | None = None
    user: str | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DatasourceCredentials(BaseModel):
    """Secret material. Never returned to clients, stored encrypted."""
    username: str | None = None
    password: str | None = None
    private_key: str | None = Field(default=None, alias="privateKey")
    private_key_passphrase: str | None = Field(default=None, alias="privateKeyPassphrase")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DatasourceBase(BaseModel):
    """Shared datasource fields."""
    name: str = Field(min_length=1, max_length=255)
    type: DatasourceType
    description: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class DatasourceCreate(DatasourceBase):
    """Input for creating a user datasource."""
    connection_config: ConnectionConfig = Field(default_factory=ConnectionConfig, alias="connectionConfig")
    credentials: DatasourceCredentials = Field(default_factory=DatasourceCredentials)
    auth_method: AuthMethod = Field(default=AuthMethod.PASSWORD, alias="authMethod")


class DatasourceUpdate(BaseModel):
    """Input for updating a user datasource. Omitted fields are left alone."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    connection_config: ConnectionConfig | None = Field(default=None, alias="connectionConfig")
    credentials: DatasourceCredentials | None = None
    auth_method: AuthMethod | None = Field(default=None, alias="authMethod")

    model_config = ConfigDict(populate_by_name=True)


class DatasourcePublic(DatasourceBase):
    """Datasource output for API responses (credentials NOT included)."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    tier: DatasourceTier
    auth_method: AuthMethod = Field(default=AuthMethod.PASSWORD, alias="authMethod")
    connection_config: ConnectionConfig = Field(default_factory=ConnectionConfig, alias="connectionConfig")
    last_test_result: TestResult | None = Field(default=None, alias="lastTestResult")
    last_test_error: str | None = Field(default=None, alias="lastTestError")
    last_tested_at: datetime | None = Field(default=None, alias="lastTestedAt")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_serializer("last_tested_at", "created_at", "updated_at")
    def serialize_dt(self, dt: datetime | None) -> str | None:
        return dt.isoformat() if dt else None


class DatasourceWithCredentials(DatasourcePublic):
    """Datasource with decrypted secrets. Internal use only."""
    credentials: DatasourceCredentials = Field(default_factory=DatasourceCredentials)
    refresh_token: str | None = None
    env_prefix: str | None = None


# =============================================================================
# Query / Introspection Results
# =============================================================================


class ColumnInfo(BaseModel):
    """Column metadata mapped to the cross-backend type vocabulary."""
    name: str
    type: ColumnType
    nullable: bool = True


class TableInfo(BaseModel):
    """Table visible through a datasource."""
    name: str
    schema_name: str | None = Field(default=None, alias="schema")
    description: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class TableSchema(BaseModel):
    """Columns of one table."""
    table: str
    columns: list[ColumnInfo]


class ConnectionStatus(BaseModel):
    """Result of a connection probe."""
    connected: bool
    error: str | None = None
    version: str | None = None
    database: str | None = None
    latency_ms: int | None = Field(default=None, alias="latencyMs")
    tested_at: datetime = Field(alias="testedAt")

    model_config = ConfigDict(populate_by_name=True)

    @field_serializer("tested_at")
    def serialize_dt(self, dt: datetime) -> str:
        return dt.isoformat()


class QueryResult(BaseModel):
    """Result of a capped ad-hoc query."""
    success: bool
    data: list[dict[str, Any]] | None = None
    row_count: int | None = Field(default=None, alias="rowCount")
    truncated: bool | None = None
    duration: int | None = None
    columns: list[str] | None = None
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class PaginatedQueryResult(BaseModel):
    """One page of a query result."""
    success: bool
    data: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = Field(default=0, alias="rowCount")
    offset: int = 0
    limit: int = 0
    has_more: bool = Field(default=False, alias="hasMore")
    duration: int | None = None
    columns: list[str] | None = None
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# OAuth Schemas
# =============================================================================


class SnowflakeDatasourceDraft(BaseModel):
    """Pending Snowflake datasource created once browser SSO completes."""
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    account: str
    warehouse: str | None = None
    database: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    role: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class OAuthCallbackResult(BaseModel):
    """Outcome of an OAuth callback, posted to the opener window."""
    success: bool
    datasource_id: str | None = Field(default=None, alias="datasourceId")
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Action Request
# =============================================================================


class ActionRequest(BaseModel):
    """Body of the single action endpoint."""
    action: str | None = None
    datasource_id: str | None = Field(default=None, alias="datasourceId")
    user_id: str | None = Field(default=None, alias="userId")
    user_key: str | None = Field(default=None, alias="userKey")
    sql: str | None = None
    table: str | None = None
    tables: list[str] | None = None
    max_rows: int | None = Field(default=None, alias="maxRows", ge=1)
    offset: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1)
    datasource_config: dict[str, Any] | None = Field(default=None, alias="datasourceConfig")
    snowflake_datasource: SnowflakeDatasourceDraft | None = Field(default=None, alias="snowflakeDatasource")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    code: str | None = None
    state: str | None = None
    oauth_error: str | None = Field(default=None, alias="oauthError")
    oauth_error_description: str | None = Field(default=None, alias="oauthErrorDescription")

    model_config = ConfigDict(populate_by_name=True)
