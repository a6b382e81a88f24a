"""
Repository layer

Database access for the datasource catalog.
"""

from tinypivot_api.repositories.base import BaseRepository
from tinypivot_api.repositories.datasources import DatasourceRepository
from tinypivot_api.repositories.owner_scoped import OwnerScopedRepository

__all__ = [
    "BaseRepository",
    "DatasourceRepository",
    "OwnerScopedRepository",
]
