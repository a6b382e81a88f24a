"""
Snowflake connector

Uses snowflake-connector-python. The driver is blocking, so every call runs
on a worker thread. Password, key-pair and OAuth sources open a fresh
connection per call; browser SSO sources go through the SSO session pool.
"""

import asyncio
import importlib
import importlib.util
import logging
from collections.abc import Callable
from types import ModuleType
from typing import Any, TypeVar

from cryptography.hazmat.primitives import serialization

from tinypivot_api.connectors.base import ProbeResult, RowSet, WarehouseConnector
from tinypivot_api.connectors.session_pool import SSOSessionPool
from tinypivot_api.connectors.type_mapping import map_snowflake_type
from tinypivot_api.core.errors import (
    ConnectionTerminatedError,
    ConnectorError,
    ConnectorUnavailableError,
    ReauthenticationRequiredError,
)
from tinypivot_api.models.enums import AuthMethod
from tinypivot_api.models.models import ColumnInfo, DatasourceWithCredentials, TableInfo, TableSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")

DRIVER_MODULE = "snowflake.connector"
QUERY_TAG = "tinypivot"

# Identity provider session is gone; a new browser login is needed
REAUTH_ERRNOS = {390111, 390112, 390114, 390195}
# Connection closed underneath us; reconnecting is enough
TERMINATED_ERRNOS = {250002, 390100}

_TERMINATED_MARKERS = ("connection is closed", "terminated", "connection reset")
_REAUTH_MARKERS = ("token has expired", "session no longer exists", "must authenticate again")


def snowflake_available() -> bool:
    """Whether snowflake-connector-python is installed."""
    try:
        return importlib.util.find_spec(DRIVER_MODULE) is not None
    except ModuleNotFoundError:
        return False


def load_driver() -> ModuleType:
    try:
        return importlib.import_module(DRIVER_MODULE)
    except ImportError as e:
        raise ConnectorUnavailableError(
            "Snowflake driver is not installed. Install snowflake-connector-python."
        ) from e


def classify_error(error: Exception) -> ConnectorError:
    """Translate a driver error into the connector error taxonomy."""
    errno = getattr(error, "errno", None)
    message = getattr(error, "msg", None) or str(error)
    lowered = message.lower()

    if errno in REAUTH_ERRNOS or any(marker in lowered for marker in _REAUTH_MARKERS):
        return ReauthenticationRequiredError(
            "Snowflake session expired. You must re-authenticate with SSO."
        )
    if errno in TERMINATED_ERRNOS or any(marker in lowered for marker in _TERMINATED_MARKERS):
        return ConnectionTerminatedError(message)
    return ConnectorError(message)


def _private_key_der(private_key: str, passphrase: str | None) -> bytes:
    try:
        key = serialization.load_pem_private_key(
            private_key.encode(),
            password=passphrase.encode() if passphrase else None,
        )
    except (ValueError, TypeError) as e:
        raise ConnectorError("Invalid private key or passphrase") from e
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _row_value(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if row.get(key) is not None:
            return row[key]
    return None


class SnowflakeConnector(WarehouseConnector):
    """Connector for Snowflake datasources."""

    def __init__(
        self,
        datasource: DatasourceWithCredentials,
        pool: SSOSessionPool | None = None,
        access_token: str | None = None,
        login_timeout: int = 30,
        driver: ModuleType | None = None,
    ):
        self.datasource = datasource
        self.pool = pool
        self.access_token = access_token or datasource.refresh_token
        self.login_timeout = login_timeout
        self.driver = driver or load_driver()

    @property
    def uses_pool(self) -> bool:
        return self.pool is not None and self.datasource.auth_method == AuthMethod.EXTERNAL_BROWSER

    # ========================================================================
    # Connection
    # ========================================================================

    def connect_params(self) -> dict[str, Any]:
        """Driver keyword arguments for this datasource."""
        config = self.datasource.connection_config
        credentials = self.datasource.credentials

        params: dict[str, Any] = {
            "account": config.account,
            "user": credentials.username or config.user,
            "login_timeout": self.login_timeout,
            "client_session_keep_alive": True,
            "session_parameters": {"QUERY_TAG": QUERY_TAG},
        }
        for name, value in (
            ("warehouse", config.warehouse),
            ("database", config.database),
            ("schema", config.schema_name),
            ("role", config.role),
        ):
            if value:
                params[name] = value

        if self.datasource.auth_method == AuthMethod.EXTERNAL_BROWSER:
            params["authenticator"] = "externalbrowser"
            params["client_store_temporary_credential"] = True
        elif self.access_token:
            params["authenticator"] = "oauth"
            params["token"] = self.access_token
        elif credentials.private_key:
            params["authenticator"] = "SNOWFLAKE_JWT"
            params["private_key"] = _private_key_der(
                credentials.private_key, credentials.private_key_passphrase
            )
        else:
            params["password"] = credentials.password

        return params

    def _connect_sync(self) -> Any:
        try:
            return self.driver.connect(**self.connect_params())
        except self.driver.errors.Error as e:
            raise classify_error(e) from e

    async def open_session(self) -> Any:
        return await asyncio.to_thread(self._connect_sync)

    def session_is_up(self, connection: Any) -> bool:
        return not connection.is_closed()

    async def close_session(self, connection: Any) -> None:
        await asyncio.to_thread(connection.close)

    async def _run(self, operation: Callable[[Any], T], timeout: float | None = None) -> T:
        """Run a blocking operation on a connection appropriate for the auth method."""

        def guarded(connection: Any) -> T:
            try:
                return operation(connection)
            except self.driver.errors.Error as e:
                raise classify_error(e) from e

        if self.uses_pool:
            return await self.pool.run(
                self.datasource.id,
                self,
                lambda connection: asyncio.to_thread(guarded, connection),
                timeout=timeout,
            )

        connection = await self.open_session()
        try:
            return await asyncio.to_thread(guarded, connection)
        finally:
            await self.close_session(connection)

    def _fetch_dicts(self, connection: Any, sql: str, params: Any = None) -> tuple[list[dict[str, Any]], list[str]]:
        cursor = connection.cursor(self.driver.DictCursor)
        try:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
            columns = [column[0] for column in (cursor.description or [])]
            return rows, columns
        finally:
            cursor.close()

    # ========================================================================
    # WarehouseConnector
    # ========================================================================

    async def test_connection(self) -> ProbeResult:
        def probe(connection: Any) -> ProbeResult:
            rows, _ = self._fetch_dicts(
                connection, "SELECT CURRENT_VERSION() AS version, CURRENT_DATABASE() AS database"
            )
            row = rows[0] if rows else {}
            return ProbeResult(
                version=_row_value(row, "VERSION", "version"),
                database=_row_value(row, "DATABASE", "database"),
            )

        return await self._run(probe)

    async def execute(self, sql: str) -> RowSet:
        timeout = None
        if self.uses_pool and self.pool.has_live_session(self.datasource.id):
            timeout = self.pool.query_timeout

        def run(connection: Any) -> RowSet:
            rows, columns = self._fetch_dicts(connection, sql)
            return RowSet(rows=rows, columns=columns)

        return await self._run(run, timeout=timeout)

    async def list_tables(self) -> list[TableInfo]:
        config = self.datasource.connection_config
        if not config.database:
            raise ConnectorError("Snowflake database name is required to list tables")

        database = _quote_identifier(config.database)
        if config.schema_name:
            sql = f"SHOW TABLES IN SCHEMA {database}.{_quote_identifier(config.schema_name)}"
        else:
            sql = f"SHOW TABLES IN DATABASE {database}"

        def run(connection: Any) -> list[TableInfo]:
            rows, _ = self._fetch_dicts(connection, sql)
            tables = []
            for row in rows:
                name = _row_value(row, "name", "NAME")
                if not name:
                    continue
                tables.append(TableInfo(name=name, schema_name=_row_value(row, "schema_name", "SCHEMA_NAME")))
            return tables

        return await self._run(run)

    async def _describe(self, tables: list[str] | None) -> list[TableSchema]:
        config = self.datasource.connection_config
        if not config.database:
            raise ConnectorError("Snowflake database name is required to describe tables")

        sql = (
            "SELECT table_name, column_name, data_type, is_nullable "
            f"FROM {_quote_identifier(config.database)}.INFORMATION_SCHEMA.COLUMNS "
            "WHERE table_schema <> 'INFORMATION_SCHEMA'"
        )
        params: list[str] = []
        if config.schema_name:
            sql += " AND UPPER(table_schema) = UPPER(%s)"
            params.append(config.schema_name)
        if tables is not None:
            sql += " AND UPPER(table_name) IN (" + ", ".join(["UPPER(%s)"] * len(tables)) + ")"
            params.extend(tables)
        sql += " ORDER BY table_name, ordinal_position"

        def run(connection: Any) -> list[TableSchema]:
            rows, _ = self._fetch_dicts(connection, sql, params)
            schemas: dict[str, TableSchema] = {}
            for row in rows:
                table = _row_value(row, "TABLE_NAME", "table_name")
                schema = schemas.setdefault(table, TableSchema(table=table, columns=[]))
                schema.columns.append(ColumnInfo(
                    name=_row_value(row, "COLUMN_NAME", "column_name"),
                    type=map_snowflake_type(_row_value(row, "DATA_TYPE", "data_type")),
                    nullable=str(_row_value(row, "IS_NULLABLE", "is_nullable")).upper() == "YES",
                ))
            return list(schemas.values())

        return await self._run(run)

    async def describe_tables(self, tables: list[str]) -> list[TableSchema]:
        if not tables:
            return []
        return await self._describe(tables)

    async def describe_all_tables(self) -> list[TableSchema]:
        return await self._describe(None)
