"""
Organization Datasources

Builds the read-only organization datasources from environment variables.
Each definition has a prefix; field values come from `{PREFIX}_{FIELD}`
unless the definition's env_mapping names another variable.

A definition whose required fields are missing is skipped, not an error.
"""

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

from tinypivot_api.config import OrgDatasourceSettings
from tinypivot_api.models.enums import AuthMethod, DatasourceTier, DatasourceType
from tinypivot_api.models.models import (
    ConnectionConfig,
    DatasourceCredentials,
    DatasourceWithCredentials,
)

logger = logging.getLogger(__name__)

ORG_ID_PREFIX = "org-"

DEFAULT_POSTGRES_PORT = 5432
DEFAULT_POSTGRES_DATABASE = "postgres"
DEFAULT_POSTGRES_SCHEMA = "public"


def org_datasource_id(prefix: str) -> str:
    return f"{ORG_ID_PREFIX}{prefix.lower()}"


def is_org_datasource_id(datasource_id: str) -> bool:
    return datasource_id.startswith(ORG_ID_PREFIX)


def _snake_case(field: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", field).lower()


class OrgEnvReader:
    """Resolves field values for one organization datasource definition."""

    def __init__(self, definition: OrgDatasourceSettings, environ: Mapping[str, str]):
        self.prefix = definition.prefix
        self.mapping = {_snake_case(k): v for k, v in definition.env_mapping.items()}
        self.environ = environ

    def get(self, field: str) -> str | None:
        variable = self.mapping.get(field) or f"{self.prefix}_{field.upper()}"
        value = self.environ.get(variable)
        return value or None


def _read_private_key(path: str) -> str | None:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not read private key file {path}: {e}")
        return None


def load_org_datasource(
    definition: OrgDatasourceSettings,
    environ: Mapping[str, str] | None = None,
) -> DatasourceWithCredentials | None:
    """
    Build one organization datasource from the environment.

    Args:
        definition: Prefix, name, type and optional variable overrides
        environ: Environment to read (defaults to os.environ)

    Returns:
        The datasource with credentials, or None if required fields are missing
    """
    env = OrgEnvReader(definition, os.environ if environ is None else environ)
    datasource_id = org_datasource_id(definition.prefix)

    if definition.type == DatasourceType.POSTGRES.value:
        host = env.get("host")
        user = env.get("user")
        if not host or not user:
            return None

        port = env.get("port")
        return DatasourceWithCredentials(
            id=datasource_id,
            name=definition.name,
            type=DatasourceType.POSTGRES,
            description=definition.description,
            tier=DatasourceTier.ORG,
            auth_method=AuthMethod.PASSWORD,
            env_prefix=definition.prefix,
            connection_config=ConnectionConfig(
                host=host,
                port=int(port) if port else DEFAULT_POSTGRES_PORT,
                database=env.get("database") or DEFAULT_POSTGRES_DATABASE,
                schema_name=env.get("schema") or DEFAULT_POSTGRES_SCHEMA,
                user=user,
            ),
            credentials=DatasourceCredentials(
                username=user,
                password=env.get("password"),
            ),
        )

    if definition.type == DatasourceType.SNOWFLAKE.value:
        account = env.get("account")
        user = env.get("user")
        if not account or not user:
            return None

        private_key = env.get("private_key")
        private_key_path = env.get("private_key_path")
        if not private_key and private_key_path:
            private_key = _read_private_key(private_key_path)

        return DatasourceWithCredentials(
            id=datasource_id,
            name=definition.name,
            type=DatasourceType.SNOWFLAKE,
            description=definition.description,
            tier=DatasourceTier.ORG,
            auth_method=AuthMethod.KEYPAIR if private_key else AuthMethod.PASSWORD,
            env_prefix=definition.prefix,
            connection_config=ConnectionConfig(
                account=account,
                warehouse=env.get("warehouse"),
                database=env.get("database"),
                schema_name=env.get("schema"),
                role=env.get("role"),
                user=user,
            ),
            credentials=DatasourceCredentials(
                username=user,
                password=env.get("password"),
                private_key=private_key,
                private_key_passphrase=env.get("private_key_passphrase"),
            ),
        )

    return None


def load_org_datasources(
    definitions: list[OrgDatasourceSettings],
    environ: Mapping[str, str] | None = None,
) -> dict[str, DatasourceWithCredentials]:
    """
    Build all configured organization datasources, keyed by id.

    Definitions with missing required fields are omitted.
    """
    datasources: dict[str, DatasourceWithCredentials] = {}
    for definition in definitions:
        datasource = load_org_datasource(definition, environ)
        if datasource is None:
            logger.info(f"Skipping organization datasource {definition.prefix}: incomplete configuration")
            continue
        datasources[datasource.id] = datasource
    logger.info(f"Loaded {len(datasources)} organization datasource(s)")
    return datasources
