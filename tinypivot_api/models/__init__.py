"""
Models package

ORM models live in orm.py, API schemas in models.py.
"""

from tinypivot_api.models.enums import (
    AuthMethod,
    ColumnType,
    DatasourceTier,
    DatasourceType,
    TestResult,
)
from tinypivot_api.models.orm import Base, Datasource

__all__ = [
    "AuthMethod",
    "Base",
    "ColumnType",
    "Datasource",
    "DatasourceTier",
    "DatasourceType",
    "TestResult",
]
