"""
Datasource Repository

Catalog access for user-tier datasources. Inactive rows are never returned.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update

from tinypivot_api.core.security import EncryptedPayload
from tinypivot_api.models.orm import Datasource
from tinypivot_api.repositories.owner_scoped import OwnerScopedRepository


class DatasourceRepository(OwnerScopedRepository[Datasource]):
    """Repository for user datasources, scoped to one user."""

    model = Datasource

    async def list_visible(self) -> list[Datasource]:
        """Active datasources owned by the user or by nobody, ordered by name."""
        query = select(Datasource).where(Datasource.active.is_(True))
        query = self.filter_cascade(query).order_by(Datasource.name)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_visible(self, datasource_id: str) -> Datasource | None:
        """Active datasource readable by the user."""
        query = select(Datasource).where(
            Datasource.id == datasource_id,
            Datasource.active.is_(True),
        )
        result = await self.session.execute(self.filter_cascade(query))
        return result.scalar_one_or_none()

    async def get_owned(self, datasource_id: str) -> Datasource | None:
        """Active datasource the user owns (required for mutations)."""
        query = select(Datasource).where(
            Datasource.id == datasource_id,
            Datasource.active.is_(True),
        )
        result = await self.session.execute(self.filter_strict(query))
        return result.scalar_one_or_none()

    async def soft_delete(self, datasource_id: str) -> bool:
        """
        Mark an owned datasource inactive.

        Returns:
            True if a row was deactivated, False if not found or not owned
        """
        result = await self.session.execute(
            update(Datasource)
            .where(
                Datasource.id == datasource_id,
                Datasource.user_id == self.user_id,
                Datasource.active.is_(True),
            )
            .values(active=False, updated_at=datetime.now(timezone.utc))
        )
        return (result.rowcount or 0) > 0

    async def record_test_result(
        self,
        datasource_id: str,
        result: str,
        error: str | None,
        tested_at: datetime,
    ) -> bool:
        """
        Persist the outcome of a connection probe on an owned row.

        Ownerless rows are readable by everyone but never written here.

        Returns:
            True if the row was updated
        """
        outcome = await self.session.execute(
            update(Datasource)
            .where(Datasource.id == datasource_id, Datasource.user_id == self.user_id)
            .values(
                last_test_result=result,
                last_test_error=error,
                last_tested_at=tested_at,
                updated_at=datetime.now(timezone.utc),
            )
        )
        return (outcome.rowcount or 0) > 0


def apply_credentials(entity: Datasource, payload: EncryptedPayload) -> None:
    entity.encrypted_credentials = payload.ciphertext
    entity.credentials_iv = payload.iv
    entity.credentials_auth_tag = payload.auth_tag
    entity.credentials_salt = payload.salt


def apply_refresh_token(entity: Datasource, payload: EncryptedPayload) -> None:
    entity.encrypted_refresh_token = payload.ciphertext
    entity.refresh_token_iv = payload.iv
    entity.refresh_token_auth_tag = payload.auth_tag
    entity.refresh_token_salt = payload.salt


def credentials_payload(entity: Datasource) -> EncryptedPayload | None:
    return EncryptedPayload.from_columns(
        entity.encrypted_credentials,
        entity.credentials_iv,
        entity.credentials_auth_tag,
        entity.credentials_salt,
    )


def refresh_token_payload(entity: Datasource) -> EncryptedPayload | None:
    return EncryptedPayload.from_columns(
        entity.encrypted_refresh_token,
        entity.refresh_token_iv,
        entity.refresh_token_auth_tag,
        entity.refresh_token_salt,
    )
