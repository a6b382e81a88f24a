"""
TinyPivot Action Router

Single POST endpoint dispatching on the request's `action` field, plus the
browser redirect target for the Snowflake OAuth flow.

Actions against registered datasources:
- list-datasources, get-datasource
- create-datasource, update-datasource, delete-datasource
- test-datasource, connect-datasource
- query-datasource, query-datasource-paginated
- list-datasource-tables, get-schema, get-all-schemas
- store-oauth-tokens, start-snowflake-oauth, snowflake-oauth-callback

Actions against the default database:
- list-tables, get-schema / get-all-schemas (without datasourceId), query
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from tinypivot_api.config import get_settings
from tinypivot_api.core.dependencies import DefaultDb, OAuthExchange, Registry
from tinypivot_api.core.errors import DatasourceError, sanitize_error_message
from tinypivot_api.models.models import (
    ActionRequest,
    DatasourceCreate,
    DatasourceUpdate,
)
from tinypivot_api.services.datasource_registry import DatasourceRegistry
from tinypivot_api.services.default_database import DefaultDatabase
from tinypivot_api.services.oauth_exchange import OAuthExchangeHandler
from tinypivot_api.services.snowflake_oauth import render_callback_html

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tinypivot", tags=["tinypivot"])

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class ActionContext:
    """Services available to an action handler."""
    registry: DatasourceRegistry
    oauth: OAuthExchangeHandler
    default_db: DefaultDatabase


ActionHandler = Callable[[ActionRequest, ActionContext], Awaitable[Any]]


# =============================================================================
# Helpers
# =============================================================================


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json", exclude_none=True)


def _require(value: Any, message: str) -> Any:
    if not value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    return value


def _parse(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid datasourceConfig: {errors}",
        ) from e


def _require_user(body: ActionRequest, registry: DatasourceRegistry, purpose: str) -> None:
    """User-tier datasources need the caller's id and key; organization ones do not."""
    if registry.is_org_datasource(body.datasource_id or ""):
        return
    _require(body.user_id, "userId is required")
    _require(body.user_key, f"userKey is required for {purpose}")


# =============================================================================
# Registered datasources
# =============================================================================


async def list_datasources(body: ActionRequest, ctx: ActionContext) -> dict:
    user_id = _require(body.user_id, "userId is required")
    datasources = await ctx.registry.list_datasources(user_id)
    return {"datasources": [_dump(ds) for ds in datasources]}


async def get_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    if not ctx.registry.is_org_datasource(datasource_id):
        _require(body.user_id, "userId is required")
    datasource = await ctx.registry.get_datasource(datasource_id, body.user_id)
    return {"datasource": _dump(datasource)}


async def create_datasource(body: ActionRequest, ctx: ActionContext) -> JSONResponse:
    config = _require(body.datasource_config, "datasourceConfig is required")
    user_id = _require(body.user_id, "userId is required")
    user_key = _require(body.user_key, "userKey is required for creating datasources")

    datasource_id = await ctx.registry.create_datasource(_parse(DatasourceCreate, config), user_id, user_key)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"datasourceId": datasource_id, "success": True},
    )


async def update_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    config = _require(body.datasource_config, "datasourceConfig is required")
    user_id = _require(body.user_id, "userId is required")
    user_key = _require(body.user_key, "userKey is required for updating datasources")

    await ctx.registry.update_datasource(datasource_id, _parse(DatasourceUpdate, config), user_id, user_key)
    return {"success": True}


async def delete_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    user_id = _require(body.user_id, "userId is required")

    await ctx.registry.delete_datasource(datasource_id, user_id)
    return {"success": True}


async def test_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    _require_user(body, ctx.registry, "testing datasources")

    result = await ctx.registry.test_datasource(datasource_id, body.user_id, body.user_key)
    return {"status": _dump(result)}


async def connect_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    _require_user(body, ctx.registry, "connecting to datasources")

    datasource = await ctx.registry.get_datasource(datasource_id, body.user_id)
    result = await ctx.registry.test_datasource(datasource_id, body.user_id, body.user_key)
    if not result.connected:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Connection failed: {result.error}",
        )

    return {
        "connected": True,
        "datasource": {
            "id": datasource.id,
            "name": datasource.name,
            "type": datasource.type.value,
            "description": datasource.description,
            "connectionConfig": _dump(datasource.connection_config),
        },
        "status": _dump(result),
    }


async def query_datasource(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    sql = _require(body.sql, "sql is required")

    if ctx.registry.is_org_datasource(datasource_id):
        result = await ctx.registry.execute_org_query(datasource_id, sql, body.max_rows)
    else:
        user_id = _require(body.user_id, "userId is required for user-tier datasources")
        user_key = _require(body.user_key, "userKey is required for user-tier datasources")
        result = await ctx.registry.execute_query(datasource_id, user_id, user_key, sql, body.max_rows)

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.error or "Query execution failed",
        )
    return _dump(result)


async def query_datasource_paginated(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    _require_user(body, ctx.registry, "executing queries")
    sql = _require(body.sql, "sql is required")

    result = await ctx.registry.execute_paginated_query(
        datasource_id,
        body.user_id,
        body.user_key,
        sql,
        offset=body.offset or 0,
        limit=body.limit or get_settings().default_page_size,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.error or "Query execution failed",
        )
    return _dump(result)


async def list_datasource_tables(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    _require_user(body, ctx.registry, "listing tables")

    tables = await ctx.registry.list_tables(datasource_id, body.user_id, body.user_key)
    return {"tables": [_dump(table) for table in tables]}


async def get_schema(body: ActionRequest, ctx: ActionContext) -> dict:
    if not body.datasource_id:
        tables = _require(body.tables, "Missing or invalid tables array")
        schemas = await ctx.default_db.get_schemas(tables)
        return {"schemas": [_dump(schema) for schema in schemas]}

    _require_user(body, ctx.registry, "fetching schema")
    schemas = await ctx.registry.get_table_schemas(
        body.datasource_id, body.user_id, body.user_key, body.tables or []
    )
    return {"schemas": [_dump(schema) for schema in schemas]}


async def get_all_schemas(body: ActionRequest, ctx: ActionContext) -> dict:
    if not body.datasource_id:
        schemas = await ctx.default_db.get_all_schemas()
        return {"schemas": [_dump(schema) for schema in schemas]}

    _require_user(body, ctx.registry, "fetching all schemas")
    schemas = await ctx.registry.get_all_table_schemas(body.datasource_id, body.user_id, body.user_key)
    return {"schemas": [_dump(schema) for schema in schemas]}


async def store_oauth_tokens(body: ActionRequest, ctx: ActionContext) -> dict:
    datasource_id = _require(body.datasource_id, "datasourceId is required")
    user_id = _require(body.user_id, "userId is required")
    user_key = _require(body.user_key, "userKey is required for storing OAuth tokens")
    refresh_token = _require(body.refresh_token, "refreshToken is required")
    expires_at = _require(body.expires_at, "expiresAt is required")

    await ctx.registry.store_oauth_tokens(datasource_id, user_id, user_key, refresh_token, expires_at)
    return {"success": True}


async def start_snowflake_oauth(body: ActionRequest, ctx: ActionContext) -> dict:
    url = ctx.oauth.start(body.snowflake_datasource, body.user_id, body.user_key)
    return {"authorizationUrl": url}


async def snowflake_oauth_callback(body: ActionRequest, ctx: ActionContext) -> HTMLResponse:
    result = await ctx.oauth.callback(body.code, body.state, body.oauth_error, body.oauth_error_description)
    return HTMLResponse(render_callback_html(result))


# =============================================================================
# Default database
# =============================================================================


async def list_tables(body: ActionRequest, ctx: ActionContext) -> dict:
    tables = await ctx.default_db.list_tables()
    return {"tables": [{"name": table.name, "description": table.description} for table in tables]}


async def query(body: ActionRequest, ctx: ActionContext) -> dict:
    sql = _require(body.sql, "Missing or invalid SQL query")
    table = _require(body.table, "Missing or invalid table name")

    result = await ctx.default_db.query(sql, table)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error or "Query execution failed",
        )
    return _dump(result)


ACTIONS: dict[str, ActionHandler] = {
    "list-tables": list_tables,
    "get-schema": get_schema,
    "get-all-schemas": get_all_schemas,
    "query": query,
    "list-datasources": list_datasources,
    "get-datasource": get_datasource,
    "create-datasource": create_datasource,
    "update-datasource": update_datasource,
    "delete-datasource": delete_datasource,
    "test-datasource": test_datasource,
    "connect-datasource": connect_datasource,
    "query-datasource": query_datasource,
    "query-datasource-paginated": query_datasource_paginated,
    "list-datasource-tables": list_datasource_tables,
    "store-oauth-tokens": store_oauth_tokens,
    "start-snowflake-oauth": start_snowflake_oauth,
    "snowflake-oauth-callback": snowflake_oauth_callback,
}


# =============================================================================
# Endpoints
# =============================================================================


@router.post("")
async def dispatch_action(
    body: ActionRequest,
    registry: Registry,
    oauth: OAuthExchange,
    default_db: DefaultDb,
) -> Any:
    """
    Run one action.

    Errors are returned as HTTP errors with a sanitized message.
    """
    if not body.action:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing action parameter")

    handler = ACTIONS.get(body.action)
    if handler is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown action: {body.action}")

    ctx = ActionContext(registry=registry, oauth=oauth, default_db=default_db)
    try:
        return await handler(body, ctx)
    except DatasourceError as e:
        logger.warning(f"Action {body.action} failed: {e.message}")
        raise HTTPException(
            status_code=e.status_code,
            detail=sanitize_error_message(e.message),
        ) from e


@router.get("/auth/snowflake/callback", response_class=HTMLResponse)
async def snowflake_callback(
    oauth: OAuthExchange,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> HTMLResponse:
    """
    Redirect target registered with the Snowflake security integration.

    Always answers with the popup page, success or not.
    """
    result = await oauth.callback(code, state, error, error_description)
    return HTMLResponse(render_callback_html(result))
