"""
Owner-Scoped Repository

Provides base repository with standardized owner scoping patterns.

Scoping Patterns:
    - Strict: Only rows owned by the user (updates, deletes, token storage)
    - Cascade: User rows + legacy rows with no owner (reads)
"""

from typing import Any, Generic, TypeVar

from sqlalchemy import Select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from tinypivot_api.models.orm import Base
from tinypivot_api.repositories.base import BaseRepository

ModelT = TypeVar("ModelT", bound=Base)


def _owner_filter(model: Any, user_id: str) -> Any:
    """Filter by user_id - bypasses type checking for generic model."""
    return model.user_id == user_id


def _owner_is_null(model: Any) -> Any:
    """Check if user_id is NULL - bypasses type checking for generic model."""
    return model.user_id.is_(None)


class OwnerScopedRepository(BaseRepository[ModelT], Generic[ModelT]):
    """
    Repository with standardized owner scoping patterns.

    Use filter_strict() when the caller must own the row.
    Use filter_cascade() for reads that also see ownerless rows.
    """

    def __init__(self, session: AsyncSession, user_id: str):
        """
        Initialize repository with database session and owner scope.

        Args:
            session: SQLAlchemy async session
            user_id: Identity of the calling user
        """
        super().__init__(session)
        self.user_id = user_id

    def filter_strict(self, query: Select[tuple[ModelT]]) -> Select[tuple[ModelT]]:
        """
        The resulting query: WHERE user_id = :user_id
        """
        return query.where(_owner_filter(self.model, self.user_id))

    def filter_cascade(self, query: Select[tuple[ModelT]]) -> Select[tuple[ModelT]]:
        """
        The resulting query: WHERE user_id = :user_id OR user_id IS NULL
        """
        return query.where(
            or_(
                _owner_filter(self.model, self.user_id),
                _owner_is_null(self.model),
            )
        )
