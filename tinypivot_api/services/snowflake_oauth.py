"""
Snowflake OAuth Client

Authorization URL construction and token endpoint calls for a Snowflake
OAuth security integration, plus the popup page rendered at callback.
"""

import html
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from tinypivot_api.config import Settings, get_settings
from tinypivot_api.core.errors import OAuthError
from tinypivot_api.models.models import OAuthCallbackResult

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["session:role:PUBLIC"]
DEFAULT_REGION = "us-west-2"


@dataclass
class SnowflakeTokens:
    """Tokens returned by the Snowflake token endpoint."""
    access_token: str
    refresh_token: str | None
    token_type: str
    expires_in: int
    expires_at: datetime
    scope: str | None = None


def oauth_base_url(account: str) -> str:
    """
    Base URL for an account identifier.

    'xy12345' -> https://xy12345.us-west-2.snowflakecomputing.com
    'xy12345.us-east-1' -> https://xy12345.us-east-1.snowflakecomputing.com
    """
    account_base, _, region = account.partition(".")
    return f"https://{account_base}.{region or DEFAULT_REGION}.snowflakecomputing.com"


class SnowflakeOAuthClient:
    """OAuth client for one Snowflake security integration."""

    def __init__(
        self,
        account: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account = account
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or DEFAULT_SCOPES
        self.base_url = oauth_base_url(account)
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SnowflakeOAuthClient":
        """
        Build a client from application settings.

        Raises:
            OAuthError: If Snowflake OAuth is not configured
        """
        settings = settings or get_settings()
        if not settings.snowflake_oauth_configured:
            raise OAuthError("Snowflake OAuth is not configured")
        return cls(
            account=settings.snowflake_oauth_account,  # type: ignore[arg-type]
            client_id=settings.snowflake_oauth_client_id,  # type: ignore[arg-type]
            client_secret=settings.snowflake_oauth_client_secret,  # type: ignore[arg-type]
            redirect_uri=settings.snowflake_oauth_redirect_uri,  # type: ignore[arg-type]
            scopes=settings.snowflake_oauth_scopes.split() or None,
        )

    def get_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self.base_url}/oauth/authorize?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str) -> SnowflakeTokens:
        """
        Exchange an authorization code for tokens.

        Raises:
            OAuthError: If the token endpoint rejects the request
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            "Token exchange failed",
        )

    async def refresh_access_token(self, refresh_token: str) -> SnowflakeTokens:
        """
        Obtain a new access token from a refresh token.

        Raises:
            OAuthError: If the token endpoint rejects the request
        """
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "Token refresh failed",
        )

    async def _token_request(self, data: dict[str, str], failure: str) -> SnowflakeTokens:
        async with httpx.AsyncClient(transport=self.transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/oauth/token-request",
                    data=data,
                    auth=(self.client_id, self.client_secret),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.HTTPError as e:
                logger.error(f"{failure}: {e}")
                raise OAuthError(f"{failure}: {e}") from e

        if response.status_code != 200:
            logger.error(f"{failure}: {response.status_code}")
            raise OAuthError(f"{failure}: {response.status_code} {response.text}")

        try:
            token_data = response.json()
            access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"{failure}: malformed token response")
            raise OAuthError(f"{failure}: malformed token response") from e

        return SnowflakeTokens(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            scope=token_data.get("scope"),
        )


# =============================================================================
# Callback page
# =============================================================================

_CALLBACK_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <title>Snowflake Authentication</title>
  <style>
    body {{
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      height: 100vh;
      margin: 0;
      background: #f5f5f5;
    }}
    .message {{
      text-align: center;
      padding: 40px;
      background: white;
      border-radius: 8px;
      box-shadow: 0 2px 10px rgba(0,0,0,0.1);
    }}
    .success {{ color: #22c55e; }}
    .error {{ color: #ef4444; }}
    p {{ color: #666; margin-top: 10px; }}
  </style>
</head>
<body>
  <div class="message">
    {body}
  </div>
  <script>
    if (window.opener) {{
      window.opener.postMessage({message}, '*');
      setTimeout(() => window.close(), 2000);
    }}
  </script>
</body>
</html>"""


def render_callback_html(result: OAuthCallbackResult) -> str:
    """
    Popup page that posts the result to the opener window and closes itself.
    """
    if result.success:
        body = '<h2 class="success">&#10003; Connected</h2><p>You can close this window.</p>'
    else:
        error = html.escape(result.error or "Unknown error", quote=True)
        body = f'<h2 class="error">&#10007; Connection Failed</h2><p>{error}</p>'

    message = json.dumps(result.model_dump(by_alias=True))
    # Keep the JSON from closing the script element
    message = message.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")

    return _CALLBACK_TEMPLATE.format(body=body, message=message)
