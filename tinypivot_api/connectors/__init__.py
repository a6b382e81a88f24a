"""
Warehouse connectors

`create_connector` picks the backend for a datasource. When the backend's
driver is not installed it returns ConnectorUnavailable instead of raising,
and callers branch on the result.
"""

from tinypivot_api.config import Settings, get_settings
from tinypivot_api.connectors.base import (
    ConnectorUnavailable,
    ProbeResult,
    RowSet,
    WarehouseConnector,
)
from tinypivot_api.connectors.postgres import PostgresConnector
from tinypivot_api.connectors.session_pool import SSOSessionPool
from tinypivot_api.connectors.snowflake import SnowflakeConnector, snowflake_available
from tinypivot_api.models.enums import DatasourceType
from tinypivot_api.models.models import DatasourceWithCredentials


def create_connector(
    datasource: DatasourceWithCredentials,
    pool: SSOSessionPool | None = None,
    access_token: str | None = None,
    settings: Settings | None = None,
) -> WarehouseConnector | ConnectorUnavailable:
    """
    Build the connector for a datasource.

    Args:
        datasource: Datasource with decrypted credentials
        pool: SSO session pool used by browser SSO sources
        access_token: OAuth access token for oauth_sso sources
        settings: Optional settings override

    Returns:
        A connector, or ConnectorUnavailable when the driver is missing
    """
    settings = settings or get_settings()

    if datasource.type == DatasourceType.POSTGRES:
        return PostgresConnector.from_datasource(
            datasource,
            connect_timeout=settings.postgres_connect_timeout,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
        )

    if datasource.type == DatasourceType.SNOWFLAKE:
        if not snowflake_available():
            return ConnectorUnavailable(
                "Snowflake driver is not installed. Install snowflake-connector-python."
            )
        return SnowflakeConnector(
            datasource,
            pool=pool,
            access_token=access_token,
            login_timeout=settings.snowflake_login_timeout,
        )

    return ConnectorUnavailable(f"Unsupported datasource type: {datasource.type}")


def create_session_pool(settings: Settings | None = None) -> SSOSessionPool:
    """Build the application's SSO session pool from settings."""
    settings = settings or get_settings()
    return SSOSessionPool(
        max_attempts=settings.sso_max_attempts,
        retry_backoff=settings.sso_retry_backoff,
        connect_timeout=settings.sso_connect_timeout,
        query_timeout=settings.sso_query_timeout,
        token_cache_path=settings.snowflake_token_cache_path,
    )


__all__ = [
    "ConnectorUnavailable",
    "PostgresConnector",
    "ProbeResult",
    "RowSet",
    "SSOSessionPool",
    "SnowflakeConnector",
    "WarehouseConnector",
    "create_connector",
    "create_session_pool",
]
