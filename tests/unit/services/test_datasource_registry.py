"""Unit tests for DatasourceRegistry

The catalog repository is patched with an AsyncMock and connectors are
replaced by the in-memory FakeConnector from conftest.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tinypivot_api.connectors.base import ConnectorUnavailable
from tinypivot_api.core.errors import (
    ConnectorError,
    CredentialDecryptionError,
    DatasourceNotFoundError,
    MissingUserKeyError,
    QueryValidationError,
    TierViolationError,
)
from tinypivot_api.models.enums import AuthMethod, DatasourceTier, DatasourceType
from tinypivot_api.models.models import (
    ConnectionConfig,
    DatasourceCreate,
    DatasourceCredentials,
    DatasourceUpdate,
    TableInfo,
)
from tinypivot_api.models.orm import Datasource
from tinypivot_api.repositories.datasources import apply_credentials, apply_refresh_token, credentials_payload
from tinypivot_api.services.datasource_registry import DatasourceRegistry, allowed_table_names
from tinypivot_api.services.snowflake_oauth import SnowflakeTokens

USER_ID = "user-1"
USER_KEY = "user-key-123"
DATASOURCE_ID = "5b0f6a52-3c1d-4a8e-9f11-0a3b6c7d8e9f"


def _row(vault, name: str = "Sales", datasource_id: str = DATASOURCE_ID, **overrides) -> Datasource:
    values = {
        "id": datasource_id,
        "name": name,
        "type": "postgres",
        "description": None,
        "tier": "user",
        "connection_config": {"host": "db.example", "port": 5432, "database": "sales", "schema": "public"},
        "auth_method": "password",
        "user_id": USER_ID,
        "active": True,
    }
    values.update(overrides)
    row = Datasource(**values)
    apply_credentials(row, vault.encrypt({"username": "sales", "password": "pw"}, USER_KEY))
    return row


def _rows(count: int) -> list[dict]:
    return [{"id": i} for i in range(count)]


def datasource_expiry() -> datetime:
    return datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    """Patch DatasourceRepository where the registry imports it."""
    instance = AsyncMock()
    instance.get_visible.return_value = None
    instance.get_owned.return_value = None
    instance.list_visible.return_value = []
    with patch("tinypivot_api.services.datasource_registry.DatasourceRepository") as mock_class:
        mock_class.return_value = instance
        yield instance


@pytest.fixture
def pool():
    return AsyncMock()


@pytest.fixture
def registry(mock_db, vault, org_postgres, fake_connector, pool, settings):
    return DatasourceRegistry(
        mock_db,
        vault,
        {org_postgres.id: org_postgres},
        pool=pool,
        connector_factory=lambda datasource, **kwargs: fake_connector,
        settings=settings,
    )


class TestLookup:
    """Test listing and credential loading across both tiers"""

    async def test_list_merges_tiers_sorted_by_name(self, registry, repo, vault):
        repo.list_visible.return_value = [
            _row(vault, name="zeta", datasource_id="a"),
            _row(vault, name="beta", datasource_id="b"),
        ]

        datasources = await registry.list_datasources(USER_ID)

        assert [ds.name for ds in datasources] == ["Analytics", "beta", "zeta"]
        assert datasources[0].tier == DatasourceTier.ORG

    async def test_list_without_user_returns_org_only(self, registry, repo):
        datasources = await registry.list_datasources(None)

        assert [ds.id for ds in datasources] == ["org-analytics"]
        repo.list_visible.assert_not_called()

    async def test_public_view_has_no_secrets(self, registry):
        public = await registry.get_datasource("org-analytics", None)

        dumped = public.model_dump()
        assert "credentials" not in dumped
        assert "env_prefix" not in dumped

    async def test_org_credentials_need_no_user_key(self, registry, org_postgres):
        datasource = await registry.get_datasource_with_credentials("org-analytics", None, None)
        assert datasource is org_postgres

    async def test_unknown_org_id(self, registry):
        with pytest.raises(DatasourceNotFoundError):
            await registry.get_datasource_with_credentials("org-missing", None, None)

    async def test_user_tier_requires_key(self, registry):
        with pytest.raises(MissingUserKeyError):
            await registry.get_datasource_with_credentials(DATASOURCE_ID, USER_ID, None)

    async def test_user_tier_not_visible(self, registry, repo):
        with pytest.raises(DatasourceNotFoundError):
            await registry.get_datasource_with_credentials(DATASOURCE_ID, USER_ID, USER_KEY)

    async def test_user_credentials_decrypted(self, registry, repo, vault):
        repo.get_visible.return_value = _row(vault)

        datasource = await registry.get_datasource_with_credentials(DATASOURCE_ID, USER_ID, USER_KEY)

        assert datasource.credentials.password == "pw"
        assert datasource.connection_config.schema_name == "public"
        assert datasource.tier == DatasourceTier.USER

    async def test_wrong_user_key_is_an_error(self, registry, repo, vault):
        repo.get_visible.return_value = _row(vault)

        with pytest.raises(CredentialDecryptionError) as exc_info:
            await registry.get_datasource_with_credentials(DATASOURCE_ID, USER_ID, "wrong-key")

        assert exc_info.value.message == "Failed to decrypt credentials. Please check your user key."

    async def test_bad_refresh_token_treated_as_absent(self, registry, repo, vault):
        row = _row(vault)
        apply_refresh_token(row, vault.encrypt_token("refresh-abc", "some-other-key"))
        repo.get_visible.return_value = row

        datasource = await registry.get_datasource_with_credentials(DATASOURCE_ID, USER_ID, USER_KEY)

        assert datasource.refresh_token is None
        assert datasource.credentials.password == "pw"


class TestMutations:
    """Test the tier boundary and user datasource writes"""

    async def test_create_encrypts_credentials(self, registry, repo, vault):
        data = DatasourceCreate(
            name="Sales",
            type=DatasourceType.POSTGRES,
            connection_config=ConnectionConfig(host="db.example", schema_name="sales"),
            credentials=DatasourceCredentials(username="sales", password="pw"),
        )

        datasource_id = await registry.create_datasource(data, USER_ID, USER_KEY)

        entity = repo.create.call_args.args[0]
        assert entity.id == datasource_id
        assert entity.tier == "user"
        assert entity.user_id == USER_ID
        assert entity.connection_config == {"host": "db.example", "schema": "sales"}
        assert "pw" not in entity.encrypted_credentials
        stored = vault.decrypt(credentials_payload(entity), USER_KEY)
        assert stored == {"username": "sales", "password": "pw"}

    async def test_create_requires_user_key(self, registry):
        data = DatasourceCreate(name="Sales", type=DatasourceType.POSTGRES)
        with pytest.raises(MissingUserKeyError):
            await registry.create_datasource(data, USER_ID, "")

    @pytest.mark.parametrize("operation", ["update", "delete", "tokens"])
    async def test_org_datasources_are_read_only(self, registry, repo, operation):
        with pytest.raises(TierViolationError):
            if operation == "update":
                await registry.update_datasource("org-analytics", DatasourceUpdate(name="x"), USER_ID, USER_KEY)
            elif operation == "delete":
                await registry.delete_datasource("org-analytics", USER_ID)
            else:
                await registry.store_oauth_tokens(
                    "org-analytics", USER_ID, USER_KEY, "rt", datasource_expiry()
                )
        repo.update.assert_not_called()
        repo.soft_delete.assert_not_called()

    async def test_update_requires_ownership(self, registry, repo):
        with pytest.raises(DatasourceNotFoundError) as exc_info:
            await registry.update_datasource(DATASOURCE_ID, DatasourceUpdate(name="x"), USER_ID, USER_KEY)
        assert exc_info.value.message == "Datasource not found or access denied"

    async def test_update_applies_partial_fields(self, registry, repo, vault):
        row = _row(vault)
        repo.get_owned.return_value = row

        await registry.update_datasource(DATASOURCE_ID, DatasourceUpdate(name="Renamed"), USER_ID, None)

        assert row.name == "Renamed"
        assert row.connection_config["host"] == "db.example"
        repo.update.assert_awaited_once_with(row)

    async def test_update_with_nothing_to_change(self, registry, repo, vault):
        repo.get_owned.return_value = _row(vault)

        await registry.update_datasource(DATASOURCE_ID, DatasourceUpdate(), USER_ID, None)

        repo.update.assert_not_called()

    async def test_update_credentials_requires_key(self, registry, repo, vault):
        repo.get_owned.return_value = _row(vault)

        with pytest.raises(MissingUserKeyError):
            await registry.update_datasource(
                DATASOURCE_ID,
                DatasourceUpdate(credentials=DatasourceCredentials(password="new")),
                USER_ID,
                None,
            )

    async def test_delete_evicts_pooled_session(self, registry, repo, pool):
        repo.soft_delete.return_value = True

        await registry.delete_datasource(DATASOURCE_ID, USER_ID)

        repo.soft_delete.assert_awaited_once_with(DATASOURCE_ID)
        pool.evict.assert_awaited_once_with(DATASOURCE_ID)

    async def test_delete_not_owned(self, registry, repo, pool):
        repo.soft_delete.return_value = False

        with pytest.raises(DatasourceNotFoundError):
            await registry.delete_datasource(DATASOURCE_ID, USER_ID)
        pool.evict.assert_not_called()

    async def test_store_oauth_tokens_switches_auth_method(self, registry, repo, vault):
        row = _row(vault)
        repo.get_owned.return_value = row
        expires_at = datasource_expiry()

        await registry.store_oauth_tokens(DATASOURCE_ID, USER_ID, USER_KEY, "refresh-abc", expires_at)

        assert row.auth_method == AuthMethod.OAUTH_SSO.value
        assert row.token_expires_at == expires_at
        assert row.encrypted_refresh_token is not None
        assert "refresh-abc" not in row.encrypted_refresh_token


class TestConnectionTest:
    """Test connection probing and result persistence"""

    async def test_org_probe_not_persisted(self, registry, repo, fake_connector):
        status = await registry.test_datasource("org-analytics", None, None)

        assert status.connected
        assert status.version == "16.1"
        assert status.latency_ms is not None
        assert fake_connector.closed
        repo.record_test_result.assert_not_called()

    async def test_user_probe_persisted(self, registry, repo, vault):
        repo.get_visible.return_value = _row(vault)

        status = await registry.test_datasource(DATASOURCE_ID, USER_ID, USER_KEY)

        assert status.connected
        args = repo.record_test_result.call_args.args
        assert args[0] == DATASOURCE_ID
        assert args[1] == "success"
        assert args[2] is None

    async def test_failure_reported_not_raised(self, mock_db, vault, repo, org_postgres, settings, make_connector):
        connector = make_connector(error=ConnectorError("could not reach postgresql://reader:pw@db.internal/x"))
        registry = DatasourceRegistry(
            mock_db,
            vault,
            {org_postgres.id: org_postgres},
            connector_factory=lambda datasource, **kwargs: connector,
            settings=settings,
        )

        status = await registry.test_datasource("org-analytics", None, None)

        assert not status.connected
        assert "reader:pw" not in status.error
        assert "[DATABASE_URL]" in status.error
        assert connector.closed


class TestQueries:
    """Test validation, row caps and pagination"""

    async def test_query_capped_and_truncated(self, registry, fake_connector):
        fake_connector.rows = _rows(3)

        result = await registry.execute_query("org-analytics", None, None, "SELECT * FROM orders", max_rows=2)

        assert result.success
        assert result.row_count == 2
        assert len(result.data) == 2
        assert result.truncated
        assert result.columns == ["id"]
        assert fake_connector.executed == ["SELECT * FROM orders LIMIT 3"]

    async def test_result_at_cap_is_not_truncated(self, registry, fake_connector):
        fake_connector.rows = _rows(2)

        result = await registry.execute_query("org-analytics", None, None, "SELECT * FROM orders", max_rows=2)

        assert result.row_count == 2
        assert not result.truncated

    async def test_cap_applies_over_subquery_limit(self, registry, fake_connector):
        fake_connector.rows = _rows(10)
        sql = "SELECT * FROM orders WHERE id IN (SELECT id FROM orders LIMIT 5)"

        result = await registry.execute_query("org-analytics", None, None, sql, max_rows=4)

        assert result.row_count == 4
        assert fake_connector.executed == [f"{sql} LIMIT 5"]

    async def test_default_row_cap_from_settings(self, registry, fake_connector, settings):
        await registry.execute_query("org-analytics", None, None, "SELECT * FROM orders")
        assert fake_connector.executed == [f"SELECT * FROM orders LIMIT {settings.default_max_rows + 1}"]

    async def test_qualified_names_allowed(self, registry, fake_connector):
        result = await registry.execute_query(
            "org-analytics", None, None, "SELECT * FROM analytics.public.orders JOIN public.customers USING (id)"
        )
        assert result.success

    async def test_forbidden_statement_rejected_before_connecting(self, mock_db, vault, org_postgres, settings):
        factory = MagicMock()
        registry = DatasourceRegistry(
            mock_db, vault, {org_postgres.id: org_postgres}, connector_factory=factory, settings=settings
        )

        with pytest.raises(QueryValidationError):
            await registry.execute_query("org-analytics", None, None, "DELETE FROM orders")
        factory.assert_not_called()

    async def test_unlisted_table_rejected_before_execute(self, registry, fake_connector):
        with pytest.raises(QueryValidationError) as exc_info:
            await registry.execute_query("org-analytics", None, None, "SELECT * FROM secrets")

        assert "secrets" in exc_info.value.message
        assert fake_connector.executed == []
        assert fake_connector.closed

    async def test_backend_error_is_unsuccessful_result(self, registry, fake_connector):
        fake_connector.error = ConnectorError('relation "orders" does not exist')
        fake_connector.tables = ["orders"]

        result = await registry.execute_query("org-analytics", None, None, "SELECT * FROM orders")

        assert not result.success
        assert result.error == 'relation "orders" does not exist'

    async def test_unavailable_driver_is_unsuccessful_result(self, mock_db, vault, org_postgres, settings):
        registry = DatasourceRegistry(
            mock_db,
            vault,
            {org_postgres.id: org_postgres},
            connector_factory=lambda datasource, **kwargs: ConnectorUnavailable("driver missing"),
            settings=settings,
        )

        result = await registry.execute_query("org-analytics", None, None, "SELECT * FROM orders")

        assert not result.success
        assert result.error == "driver missing"

    async def test_org_query_rejects_user_ids(self, registry):
        with pytest.raises(TierViolationError):
            await registry.execute_org_query(DATASOURCE_ID, "SELECT * FROM orders")

    async def test_org_query(self, registry, fake_connector):
        fake_connector.rows = _rows(3)
        result = await registry.execute_org_query("org-analytics", "SELECT * FROM orders", max_rows=10)

        assert result.success
        assert not result.truncated

    async def test_first_page_with_more(self, registry, fake_connector):
        fake_connector.rows = _rows(120)

        page = await registry.execute_paginated_query(
            "org-analytics", None, None, "SELECT * FROM orders", offset=0, limit=50
        )

        assert page.success
        assert page.row_count == 50
        assert len(page.data) == 50
        assert page.has_more
        assert fake_connector.executed == ["SELECT * FROM orders LIMIT 51 OFFSET 0"]

    async def test_last_page(self, registry, fake_connector):
        fake_connector.rows = _rows(30)

        page = await registry.execute_paginated_query(
            "org-analytics", None, None, "SELECT * FROM orders", offset=100, limit=50
        )

        assert page.row_count == 30
        assert not page.has_more
        assert page.offset == 100

    async def test_paginated_failure_keeps_window(self, registry, fake_connector):
        fake_connector.error = ConnectorError("boom")

        page = await registry.execute_paginated_query(
            "org-analytics", None, None, "SELECT * FROM orders", offset=50, limit=25
        )

        assert not page.success
        assert page.offset == 50
        assert page.limit == 25
        assert page.error == "boom"


class TestOAuthAccessToken:
    """Test refresh-token exchange for oauth_sso datasources"""

    async def test_refresh_token_exchanged_for_access_token(self, mock_db, vault, repo, fake_connector, settings):
        row = _row(vault, type="snowflake", auth_method="oauth_sso", connection_config={"account": "xy12345"})
        apply_refresh_token(row, vault.encrypt_token("refresh-abc", USER_KEY))
        repo.get_visible.return_value = row

        oauth_client = AsyncMock()
        oauth_client.refresh_access_token.return_value = SnowflakeTokens(
            access_token="access-1",
            refresh_token=None,
            token_type="Bearer",
            expires_in=600,
            expires_at=datasource_expiry(),
        )
        factory = MagicMock(return_value=fake_connector)
        registry = DatasourceRegistry(
            mock_db, vault, {}, connector_factory=factory, oauth_client=oauth_client, settings=settings
        )

        await registry.list_tables(DATASOURCE_ID, USER_ID, USER_KEY)

        oauth_client.refresh_access_token.assert_awaited_once_with("refresh-abc")
        assert factory.call_args.kwargs["access_token"] == "access-1"


class TestAllowedTableNames:
    def test_bare_schema_and_database_forms(self):
        tables = [TableInfo(name="orders", schema_name="public")]
        assert allowed_table_names(tables, "sales") == ["orders", "public.orders", "sales.public.orders"]

    def test_without_schema(self):
        assert allowed_table_names([TableInfo(name="orders")]) == ["orders"]
