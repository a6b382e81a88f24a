"""
OAuth Exchange Handler

Two-step browser SSO flow for creating Snowflake datasources:

    1. start(): the pending datasource, user id and user key are sealed
       into an encrypted, timestamped state string and the user is sent
       to the Snowflake authorization URL.
    2. callback(): the state is opened and checked for age, the code is
       exchanged for tokens, and the datasource is created with its
       refresh token stored encrypted under the user's key.

The state is encrypted with the credential vault under a fixed
server-side key, so only this server can open it.
"""

import base64
import binascii
import json
import logging
import time

from tinypivot_api.core.errors import (
    CredentialDecryptionError,
    DatasourceError,
    MissingUserKeyError,
    OAuthError,
    sanitize_error_message,
)
from tinypivot_api.core.security import CredentialService, EncryptedPayload
from tinypivot_api.models.enums import AuthMethod, DatasourceType
from tinypivot_api.models.models import (
    ConnectionConfig,
    DatasourceCreate,
    DatasourceCredentials,
    OAuthCallbackResult,
    SnowflakeDatasourceDraft,
)
from tinypivot_api.services.datasource_registry import DatasourceRegistry
from tinypivot_api.services.snowflake_oauth import SnowflakeOAuthClient

logger = logging.getLogger(__name__)

STATE_KEY = "oauth-state"
STATE_MAX_AGE_SECONDS = 10 * 60
OAUTH_PLACEHOLDER_USERNAME = "oauth_user"


def encode_state(vault: CredentialService, payload: dict) -> str:
    """Encrypt a state payload into a URL-safe string."""
    encrypted = vault.encrypt(payload, STATE_KEY)
    raw = json.dumps(encrypted.to_dict()).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_state(vault: CredentialService, state: str) -> dict:
    """
    Open a state string produced by encode_state.

    Raises:
        OAuthError: If the state is malformed or was not issued by this server
    """
    try:
        padded = state + "=" * (-len(state) % 4)
        encrypted = json.loads(base64.urlsafe_b64decode(padded.encode()))
        if not isinstance(encrypted, dict):
            raise ValueError("state is not an object")
        return vault.decrypt(EncryptedPayload.from_dict(encrypted), STATE_KEY)
    except (ValueError, binascii.Error, CredentialDecryptionError) as e:
        raise OAuthError("Invalid or expired OAuth state") from e


class OAuthExchangeHandler:
    """Runs the Snowflake OAuth flow against a datasource registry."""

    def __init__(
        self,
        registry: DatasourceRegistry,
        vault: CredentialService,
        oauth_client: SnowflakeOAuthClient | None,
        state_max_age: float = STATE_MAX_AGE_SECONDS,
    ):
        self.registry = registry
        self.vault = vault
        self.oauth_client = oauth_client
        self.state_max_age = state_max_age

    def _require_client(self) -> SnowflakeOAuthClient:
        if self.oauth_client is None:
            raise OAuthError("Snowflake OAuth is not configured")
        return self.oauth_client

    def start(self, draft: SnowflakeDatasourceDraft | None, user_id: str | None, user_key: str | None) -> str:
        """
        Begin the flow.

        Returns:
            Authorization URL to open in the browser

        Raises:
            OAuthError: If OAuth is not configured or the draft is incomplete
            MissingUserKeyError: If user id or key is missing
        """
        client = self._require_client()

        if draft is None:
            raise OAuthError("snowflakeDatasource is required")
        if not user_id or not user_key:
            raise MissingUserKeyError("userId and userKey are required")
        if not draft.name or not draft.account:
            raise OAuthError("Datasource name and Snowflake account are required")

        state = encode_state(self.vault, {
            "name": draft.name,
            "description": draft.description,
            "account": draft.account,
            "warehouse": draft.warehouse,
            "database": draft.database,
            "schema": draft.schema_name,
            "role": draft.role,
            "userId": user_id,
            "userKey": user_key,
            "timestamp": time.time(),
        })

        logger.info(f"Starting Snowflake OAuth for user {user_id}")
        return client.get_authorization_url(state)

    async def callback(
        self,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> OAuthCallbackResult:
        """
        Complete the flow. Never raises; failures come back in the result.
        """
        if error:
            return OAuthCallbackResult(success=False, error=error_description or error)

        try:
            datasource_id = await self._complete(code, state)
        except DatasourceError as e:
            logger.warning(f"Snowflake OAuth callback failed: {e.message}")
            return OAuthCallbackResult(success=False, error=sanitize_error_message(e.message))
        except Exception as e:
            logger.error(f"Snowflake OAuth callback failed: {str(e)}", exc_info=True)
            return OAuthCallbackResult(success=False, error=sanitize_error_message(str(e)))

        return OAuthCallbackResult(success=True, datasource_id=datasource_id)

    async def _complete(self, code: str | None, state: str | None) -> str:
        client = self._require_client()

        if not code or not state:
            raise OAuthError("Missing code or state parameter")

        payload = decode_state(self.vault, state)

        issued_at = payload.get("timestamp")
        if not isinstance(issued_at, (int, float)) or time.time() - issued_at > self.state_max_age:
            raise OAuthError("OAuth state expired")

        user_id = payload.get("userId")
        user_key = payload.get("userKey")
        if not user_id or not user_key:
            raise OAuthError("Invalid or expired OAuth state")

        tokens = await client.exchange_code_for_tokens(code)

        datasource_id = await self.registry.create_datasource(
            DatasourceCreate(
                name=payload["name"],
                type=DatasourceType.SNOWFLAKE,
                description=payload.get("description"),
                auth_method=AuthMethod.OAUTH_SSO,
                connection_config=ConnectionConfig(
                    account=payload.get("account"),
                    warehouse=payload.get("warehouse"),
                    database=payload.get("database"),
                    schema_name=payload.get("schema"),
                    role=payload.get("role"),
                ),
                credentials=DatasourceCredentials(username=OAUTH_PLACEHOLDER_USERNAME),
            ),
            user_id,
            user_key,
        )

        if tokens.refresh_token:
            await self.registry.store_oauth_tokens(
                datasource_id,
                user_id,
                user_key,
                tokens.refresh_token,
                tokens.expires_at,
            )
        else:
            logger.warning(f"Snowflake returned no refresh token for datasource {datasource_id}")

        logger.info(f"Created Snowflake datasource {datasource_id} via OAuth")
        return datasource_id
