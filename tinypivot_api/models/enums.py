"""
Enumeration types used across the application.
"""

from enum import Enum


class DatasourceTier(str, Enum):
    """Who owns a datasource"""
    ORG = "org"
    USER = "user"


class DatasourceType(str, Enum):
    """Supported warehouse backends"""
    POSTGRES = "postgres"
    SNOWFLAKE = "snowflake"


class AuthMethod(str, Enum):
    """How a datasource authenticates against its warehouse"""
    PASSWORD = "password"
    KEYPAIR = "keypair"
    OAUTH_SSO = "oauth_sso"
    EXTERNAL_BROWSER = "externalbrowser"


class TestResult(str, Enum):
    """Outcome of the most recent connection probe"""
    __test__ = False

    SUCCESS = "success"
    FAILURE = "failure"


class ColumnType(str, Enum):
    """Cross-backend column type vocabulary"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    UNKNOWN = "unknown"
