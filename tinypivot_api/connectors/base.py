"""
Warehouse connector interface

Every backend implements the same small surface. Connectors raise
ConnectorError subclasses; the registry turns them into reported results.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from tinypivot_api.models.models import TableInfo, TableSchema


@dataclass
class ProbeResult:
    """Facts returned by a successful connection probe."""
    version: str | None = None
    database: str | None = None


@dataclass
class RowSet:
    """Rows returned by a query, as dicts keyed by column name."""
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)


class WarehouseConnector(ABC):
    """Connection to one external warehouse."""

    @abstractmethod
    async def test_connection(self) -> ProbeResult:
        """Connect and run a trivial probe query."""

    @abstractmethod
    async def execute(self, sql: str) -> RowSet:
        """Run a query. Row caps are applied to the SQL by the caller."""

    @abstractmethod
    async def list_tables(self) -> list[TableInfo]:
        """Base tables visible through this datasource."""

    @abstractmethod
    async def describe_tables(self, tables: list[str]) -> list[TableSchema]:
        """Column metadata for the named tables."""

    @abstractmethod
    async def describe_all_tables(self) -> list[TableSchema]:
        """Column metadata for every visible table."""

    async def close(self) -> None:
        """Release any connection held outside a single call."""
        return None


@dataclass(frozen=True)
class ConnectorUnavailable:
    """Returned by the connector factory when a backend driver is missing."""
    reason: str
