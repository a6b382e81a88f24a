"""
Request Dependencies

FastAPI providers for the services the routers use. Application-wide
objects (vault, organization datasources, SSO session pool, OAuth client)
are created once in the lifespan and kept on app.state; the registry is
built per request around the request's database session.
"""

from typing import Annotated

from fastapi import Depends, Request

from tinypivot_api.config import get_settings
from tinypivot_api.connectors.session_pool import SSOSessionPool
from tinypivot_api.core.database import DbSession
from tinypivot_api.core.security import CredentialService
from tinypivot_api.models.models import DatasourceWithCredentials
from tinypivot_api.services.datasource_registry import DatasourceRegistry
from tinypivot_api.services.default_database import DefaultDatabase
from tinypivot_api.services.oauth_exchange import OAuthExchangeHandler
from tinypivot_api.services.snowflake_oauth import SnowflakeOAuthClient


def get_vault(request: Request) -> CredentialService:
    return request.app.state.vault


def get_org_datasources(request: Request) -> dict[str, DatasourceWithCredentials]:
    return request.app.state.org_datasources


def get_session_pool(request: Request) -> SSOSessionPool:
    return request.app.state.session_pool


def get_oauth_client(request: Request) -> SnowflakeOAuthClient | None:
    return getattr(request.app.state, "oauth_client", None)


def get_registry(
    db: DbSession,
    vault: Annotated[CredentialService, Depends(get_vault)],
    org_datasources: Annotated[dict[str, DatasourceWithCredentials], Depends(get_org_datasources)],
    pool: Annotated[SSOSessionPool, Depends(get_session_pool)],
    oauth_client: Annotated[SnowflakeOAuthClient | None, Depends(get_oauth_client)],
) -> DatasourceRegistry:
    return DatasourceRegistry(
        db,
        vault,
        org_datasources,
        pool=pool,
        oauth_client=oauth_client,
        settings=get_settings(),
    )


def get_oauth_exchange(
    registry: Annotated[DatasourceRegistry, Depends(get_registry)],
    vault: Annotated[CredentialService, Depends(get_vault)],
    oauth_client: Annotated[SnowflakeOAuthClient | None, Depends(get_oauth_client)],
) -> OAuthExchangeHandler:
    return OAuthExchangeHandler(registry, vault, oauth_client)


def get_default_database() -> DefaultDatabase:
    return DefaultDatabase.from_settings(get_settings())


Registry = Annotated[DatasourceRegistry, Depends(get_registry)]
OAuthExchange = Annotated[OAuthExchangeHandler, Depends(get_oauth_exchange)]
DefaultDb = Annotated[DefaultDatabase, Depends(get_default_database)]
