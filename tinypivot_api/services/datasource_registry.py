"""
Datasource Registry

Single entry point for everything the router does with datasources.

Two tiers are served side by side:
    - Organization datasources come from environment configuration, are
      held in memory, and are read-only. Their ids start with "org-".
    - User datasources live in the catalog table. Secrets are stored
      encrypted and can only be read with the owner's user key.

Every ad-hoc SQL string is checked by the SQL safety validator before a
connector sees it. Backend-reported failures come back as unsuccessful
results instead of exceptions.
"""

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tinypivot_api.config import Settings, get_settings
from tinypivot_api.connectors import ConnectorUnavailable, WarehouseConnector, create_connector
from tinypivot_api.connectors.session_pool import SSOSessionPool
from tinypivot_api.core.errors import (
    ConnectorError,
    CredentialDecryptionError,
    DatasourceNotFoundError,
    MissingUserKeyError,
    OAuthError,
    QueryValidationError,
    TierViolationError,
    sanitize_error_message,
)
from tinypivot_api.core.security import CredentialService
from tinypivot_api.models.enums import AuthMethod, DatasourceTier, TestResult
from tinypivot_api.models.models import (
    ConnectionStatus,
    DatasourceCreate,
    DatasourceCredentials,
    DatasourcePublic,
    DatasourceUpdate,
    DatasourceWithCredentials,
    PaginatedQueryResult,
    QueryResult,
    TableInfo,
    TableSchema,
)
from tinypivot_api.models.orm import Datasource
from tinypivot_api.repositories.datasources import (
    DatasourceRepository,
    apply_credentials,
    apply_refresh_token,
    credentials_payload,
    refresh_token_payload,
)
from tinypivot_api.services.org_datasources import is_org_datasource_id
from tinypivot_api.services.snowflake_oauth import SnowflakeOAuthClient
from tinypivot_api.services.sql_validation import (
    build_paginated_query,
    ensure_limit,
    extract_table_names,
    validate_sql,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectorFactory(Protocol):
    def __call__(
        self,
        datasource: DatasourceWithCredentials,
        pool: SSOSessionPool | None = None,
        access_token: str | None = None,
        settings: Settings | None = None,
    ) -> WarehouseConnector | ConnectorUnavailable: ...


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _failure_message(error: Exception) -> str:
    message = error.message if isinstance(error, ConnectorError) else str(error)
    return sanitize_error_message(message)


def allowed_table_names(tables: list[TableInfo], database: str | None = None) -> list[str]:
    """
    Whitelist entries for a table listing.

    Each table may be referenced bare, schema-qualified, or (when the
    database is known) fully qualified.
    """
    allowed: list[str] = []
    for table in tables:
        allowed.append(table.name)
        if table.schema_name:
            allowed.append(f"{table.schema_name}.{table.name}")
            if database:
                allowed.append(f"{database}.{table.schema_name}.{table.name}")
    return allowed


def to_public(datasource: DatasourceWithCredentials | Datasource) -> DatasourcePublic:
    """Strip secrets from a datasource."""
    if isinstance(datasource, Datasource):
        return DatasourcePublic.model_validate(datasource)
    return DatasourcePublic.model_validate(
        datasource.model_dump(exclude={"credentials", "refresh_token", "env_prefix"})
    )


class DatasourceRegistry:
    """
    Registry of organization and user datasources.

    Created per request with the request's database session. The
    organization datasources and the SSO session pool are application-wide
    and are passed in.
    """

    def __init__(
        self,
        db: AsyncSession,
        vault: CredentialService,
        org_datasources: dict[str, DatasourceWithCredentials],
        pool: SSOSessionPool | None = None,
        connector_factory: ConnectorFactory = create_connector,
        oauth_client: SnowflakeOAuthClient | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.vault = vault
        self.org_datasources = org_datasources
        self.pool = pool
        self.connector_factory = connector_factory
        self.oauth_client = oauth_client
        self.settings = settings or get_settings()

    def _repository(self, user_id: str) -> DatasourceRepository:
        return DatasourceRepository(self.db, user_id)

    # ========================================================================
    # Lookup
    # ========================================================================

    def is_org_datasource(self, datasource_id: str) -> bool:
        return is_org_datasource_id(datasource_id)

    async def list_datasources(self, user_id: str | None) -> list[DatasourcePublic]:
        """
        Organization datasources plus the user's own, ordered by name.

        Without a user id only organization datasources are returned.
        """
        datasources = [to_public(ds) for ds in self.org_datasources.values()]
        if user_id:
            rows = await self._repository(user_id).list_visible()
            datasources.extend(to_public(row) for row in rows)
        return sorted(datasources, key=lambda ds: ds.name.lower())

    async def get_datasource(self, datasource_id: str, user_id: str | None) -> DatasourcePublic:
        """
        Raises:
            DatasourceNotFoundError: If the datasource is not visible to the user
        """
        if self.is_org_datasource(datasource_id):
            return to_public(self._get_org(datasource_id))

        if not user_id:
            raise MissingUserKeyError("userId is required for user-tier datasources")

        row = await self._repository(user_id).get_visible(datasource_id)
        if row is None:
            raise DatasourceNotFoundError("Datasource not found")
        return to_public(row)

    def _get_org(self, datasource_id: str) -> DatasourceWithCredentials:
        datasource = self.org_datasources.get(datasource_id)
        if datasource is None:
            raise DatasourceNotFoundError("Datasource not found")
        return datasource

    async def get_datasource_with_credentials(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
    ) -> DatasourceWithCredentials:
        """
        Load a datasource with its secrets decrypted.

        Organization datasources need no user key. For user datasources a
        bad primary bundle is an error; a bad refresh token is logged and
        treated as absent.

        Raises:
            DatasourceNotFoundError: Unknown, inactive, or foreign datasource
            MissingUserKeyError: User id or key not supplied
            CredentialDecryptionError: Stored credentials cannot be decrypted
        """
        if self.is_org_datasource(datasource_id):
            return self._get_org(datasource_id)

        if not user_id:
            raise MissingUserKeyError("userId is required for user-tier datasources")
        if not user_key:
            raise MissingUserKeyError("userKey is required for user-tier datasources")

        row = await self._repository(user_id).get_visible(datasource_id)
        if row is None:
            raise DatasourceNotFoundError("Datasource not found")

        credentials = DatasourceCredentials()
        payload = credentials_payload(row)
        if payload is not None:
            try:
                credentials = DatasourceCredentials.model_validate(self.vault.decrypt(payload, user_key))
            except CredentialDecryptionError as e:
                logger.warning(f"Failed to decrypt credentials for datasource {datasource_id}")
                raise CredentialDecryptionError(
                    "Failed to decrypt credentials. Please check your user key."
                ) from e

        refresh_token = None
        token_payload = refresh_token_payload(row)
        if token_payload is not None:
            try:
                refresh_token = self.vault.decrypt_token(token_payload, user_key)
            except CredentialDecryptionError:
                logger.warning(f"Failed to decrypt refresh token for datasource {datasource_id}")

        public = to_public(row)
        return DatasourceWithCredentials(
            **public.model_dump(),
            credentials=credentials,
            refresh_token=refresh_token,
        )

    # ========================================================================
    # Mutations (user tier only)
    # ========================================================================

    def _reject_org(self, datasource_id: str, action: str) -> None:
        if self.is_org_datasource(datasource_id):
            raise TierViolationError(f"Cannot {action} organization-level datasources")

    async def create_datasource(self, data: DatasourceCreate, user_id: str, user_key: str) -> str:
        """
        Create a user datasource with encrypted credentials.

        Returns:
            The new datasource id
        """
        if not user_id or not user_key:
            raise MissingUserKeyError("userId and userKey are required")

        entity = Datasource(
            id=str(uuid.uuid4()),
            name=data.name,
            type=data.type.value,
            description=data.description,
            tier=DatasourceTier.USER.value,
            connection_config=data.connection_config.model_dump(by_alias=True, exclude_none=True),
            auth_method=data.auth_method.value,
            user_id=user_id,
            active=True,
        )
        apply_credentials(
            entity,
            self.vault.encrypt(data.credentials.model_dump(by_alias=True, exclude_none=True), user_key),
        )
        await self._repository(user_id).create(entity)

        logger.info(f"Created {data.type.value} datasource {entity.id} for user {user_id}")
        return entity.id

    async def update_datasource(
        self,
        datasource_id: str,
        data: DatasourceUpdate,
        user_id: str,
        user_key: str | None,
    ) -> None:
        """
        Apply a partial update to an owned datasource.

        Raises:
            TierViolationError: For organization datasources
            DatasourceNotFoundError: If the user does not own the datasource
        """
        self._reject_org(datasource_id, "modify")

        repo = self._repository(user_id)
        entity = await repo.get_owned(datasource_id)
        if entity is None:
            raise DatasourceNotFoundError("Datasource not found or access denied")

        changed = False
        if data.name is not None:
            entity.name = data.name
            changed = True
        if data.description is not None:
            entity.description = data.description
            changed = True
        if data.connection_config is not None:
            entity.connection_config = data.connection_config.model_dump(by_alias=True, exclude_none=True)
            changed = True
        if data.auth_method is not None:
            entity.auth_method = data.auth_method.value
            changed = True
        if data.credentials is not None:
            if not user_key:
                raise MissingUserKeyError("userKey is required to update credentials")
            apply_credentials(
                entity,
                self.vault.encrypt(data.credentials.model_dump(by_alias=True, exclude_none=True), user_key),
            )
            changed = True

        if not changed:
            return

        entity.updated_at = datetime.now(timezone.utc)
        await repo.update(entity)
        logger.info(f"Updated datasource {datasource_id}")

    async def delete_datasource(self, datasource_id: str, user_id: str) -> None:
        """
        Soft delete an owned datasource.

        Raises:
            TierViolationError: For organization datasources
            DatasourceNotFoundError: If no owned active row matched
        """
        self._reject_org(datasource_id, "delete")

        deleted = await self._repository(user_id).soft_delete(datasource_id)
        if not deleted:
            raise DatasourceNotFoundError("Datasource not found or access denied")

        if self.pool is not None:
            await self.pool.evict(datasource_id)
        logger.info(f"Deleted datasource {datasource_id}")

    async def store_oauth_tokens(
        self,
        datasource_id: str,
        user_id: str,
        user_key: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Encrypt and store an OAuth refresh token; switches the source to oauth_sso."""
        self._reject_org(datasource_id, "store OAuth tokens for")
        if not user_key:
            raise MissingUserKeyError("userKey is required to store OAuth tokens")

        repo = self._repository(user_id)
        entity = await repo.get_owned(datasource_id)
        if entity is None:
            raise DatasourceNotFoundError("Datasource not found or access denied")

        apply_refresh_token(entity, self.vault.encrypt_token(refresh_token, user_key))
        entity.token_expires_at = expires_at
        entity.auth_method = AuthMethod.OAUTH_SSO.value
        entity.updated_at = datetime.now(timezone.utc)
        await repo.update(entity)
        logger.info(f"Stored OAuth tokens for datasource {datasource_id}")

    # ========================================================================
    # Connector access
    # ========================================================================

    async def _access_token(self, datasource: DatasourceWithCredentials) -> str | None:
        """
        Fresh access token for oauth_sso sources.

        When no OAuth client is configured the stored token is passed to
        the driver as is.
        """
        if datasource.auth_method != AuthMethod.OAUTH_SSO or not datasource.refresh_token:
            return None
        if self.oauth_client is None:
            return datasource.refresh_token
        tokens = await self.oauth_client.refresh_access_token(datasource.refresh_token)
        return tokens.access_token

    async def _connector(self, datasource: DatasourceWithCredentials) -> WarehouseConnector | ConnectorUnavailable:
        try:
            access_token = await self._access_token(datasource)
        except OAuthError as e:
            raise ConnectorError(f"Failed to refresh OAuth access token: {e.message}") from e
        return self.connector_factory(
            datasource,
            pool=self.pool,
            access_token=access_token,
            settings=self.settings,
        )

    async def _with_connector(
        self,
        datasource: DatasourceWithCredentials,
        operation: Callable[[WarehouseConnector], Awaitable[T]],
    ) -> T:
        connector = await self._connector(datasource)
        if isinstance(connector, ConnectorUnavailable):
            raise ConnectorError(connector.reason)
        try:
            return await operation(connector)
        finally:
            await connector.close()

    # ========================================================================
    # Connection test
    # ========================================================================

    async def test_datasource(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
    ) -> ConnectionStatus:
        """
        Probe a datasource.

        Connection failures are reported in the status, not raised. The
        outcome is persisted for user datasources only.
        """
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)
        start = time.perf_counter()

        try:
            probe = await self._with_connector(datasource, lambda c: c.test_connection())
            status = ConnectionStatus(
                connected=True,
                version=probe.version,
                database=probe.database,
                latency_ms=_elapsed_ms(start),
                tested_at=datetime.now(timezone.utc),
            )
        except ConnectorError as e:
            logger.warning(f"Connection test failed for datasource {datasource_id}: {e.message}")
            status = ConnectionStatus(
                connected=False,
                error=_failure_message(e),
                latency_ms=_elapsed_ms(start),
                tested_at=datetime.now(timezone.utc),
            )

        if datasource.tier == DatasourceTier.USER and user_id:
            await self._repository(user_id).record_test_result(
                datasource_id,
                TestResult.SUCCESS.value if status.connected else TestResult.FAILURE.value,
                status.error,
                status.tested_at,
            )

        return status

    # ========================================================================
    # Queries
    # ========================================================================

    @staticmethod
    def _check_statement(sql: str) -> None:
        """Statement-shape checks only; every referenced table counts as allowed."""
        result = validate_sql(sql, extract_table_names(sql))
        if not result.valid:
            raise QueryValidationError(result.error or "Invalid SQL")

    async def _check_tables(
        self,
        connector: WarehouseConnector,
        datasource: DatasourceWithCredentials,
        sql: str,
    ) -> None:
        """Full validation against the tables the datasource exposes."""
        tables = await connector.list_tables()
        allowed = allowed_table_names(tables, datasource.connection_config.database)
        result = validate_sql(sql, allowed)
        if not result.valid:
            raise QueryValidationError(result.error or "Invalid SQL")

    async def _execute(
        self,
        datasource: DatasourceWithCredentials,
        sql: str,
        max_rows: int | None = None,
    ) -> QueryResult:
        max_rows = max_rows or self.settings.default_max_rows
        self._check_statement(sql)

        start = time.perf_counter()

        async def run(connector: WarehouseConnector) -> QueryResult:
            await self._check_tables(connector, datasource, sql)
            # One row past the cap tells a full result from a truncated one
            rows = await connector.execute(ensure_limit(sql, max_rows + 1))
            data = rows.rows[:max_rows]
            return QueryResult(
                success=True,
                data=data,
                row_count=len(data),
                truncated=len(rows.rows) > max_rows,
                duration=_elapsed_ms(start),
                columns=rows.columns,
            )

        try:
            return await self._with_connector(datasource, run)
        except ConnectorError as e:
            logger.warning(f"Query failed on datasource {datasource.id}: {e.message}")
            return QueryResult(success=False, error=_failure_message(e), duration=_elapsed_ms(start))

    async def execute_query(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
        sql: str,
        max_rows: int | None = None,
    ) -> QueryResult:
        """
        Run a capped query.

        Raises:
            QueryValidationError: If the validator rejects the SQL
        """
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)
        return await self._execute(datasource, sql, max_rows)

    async def execute_org_query(self, datasource_id: str, sql: str, max_rows: int | None = None) -> QueryResult:
        """Run a capped query against an organization datasource. No user key is needed."""
        if not self.is_org_datasource(datasource_id):
            raise TierViolationError("Not an organization datasource")
        return await self._execute(self._get_org(datasource_id), sql, max_rows)

    async def execute_paginated_query(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
        sql: str,
        offset: int = 0,
        limit: int | None = None,
    ) -> PaginatedQueryResult:
        """
        Fetch one page of a query.

        One extra row is requested to detect whether another page exists.
        """
        limit = limit or self.settings.default_page_size
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)

        self._check_statement(sql)

        start = time.perf_counter()

        async def run(connector: WarehouseConnector) -> PaginatedQueryResult:
            await self._check_tables(connector, datasource, sql)
            rows = await connector.execute(build_paginated_query(sql, offset, limit))
            has_more = len(rows.rows) > limit
            page = rows.rows[:limit]
            return PaginatedQueryResult(
                success=True,
                data=page,
                row_count=len(page),
                offset=offset,
                limit=limit,
                has_more=has_more,
                duration=_elapsed_ms(start),
                columns=rows.columns,
            )

        try:
            return await self._with_connector(datasource, run)
        except ConnectorError as e:
            logger.warning(f"Paginated query failed on datasource {datasource_id}: {e.message}")
            return PaginatedQueryResult(
                success=False,
                offset=offset,
                limit=limit,
                duration=_elapsed_ms(start),
                error=_failure_message(e),
            )

    # ========================================================================
    # Introspection
    # ========================================================================

    async def list_tables(self, datasource_id: str, user_id: str | None, user_key: str | None) -> list[TableInfo]:
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)
        return await self._with_connector(datasource, lambda c: c.list_tables())

    async def get_table_schemas(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
        tables: list[str],
    ) -> list[TableSchema]:
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)
        return await self._with_connector(datasource, lambda c: c.describe_tables(tables))

    async def get_all_table_schemas(
        self,
        datasource_id: str,
        user_id: str | None,
        user_key: str | None,
    ) -> list[TableSchema]:
        datasource = await self.get_datasource_with_credentials(datasource_id, user_id, user_key)
        return await self._with_connector(datasource, lambda c: c.describe_all_tables())

