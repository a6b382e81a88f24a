"""Unit tests for the Snowflake OAuth client and callback page"""

import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from tinypivot_api.config import Settings
from tinypivot_api.core.errors import OAuthError
from tinypivot_api.models.models import OAuthCallbackResult
from tinypivot_api.services.snowflake_oauth import (
    SnowflakeOAuthClient,
    oauth_base_url,
    render_callback_html,
)

TOKEN_RESPONSE = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "token_type": "Bearer",
    "expires_in": 600,
    "scope": "session:role:PUBLIC refresh_token",
}


def _client(handler) -> SnowflakeOAuthClient:
    return SnowflakeOAuthClient(
        account="xy12345",
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example/api/tinypivot/auth/snowflake/callback",
        transport=httpx.MockTransport(handler),
    )


class TestEndpoints:
    def test_default_region(self):
        assert oauth_base_url("xy12345") == "https://xy12345.us-west-2.snowflakecomputing.com"

    def test_explicit_region(self):
        assert oauth_base_url("xy12345.eu-central-1") == "https://xy12345.eu-central-1.snowflakecomputing.com"

    def test_authorization_url(self):
        client = _client(lambda request: httpx.Response(200))
        url = urlparse(client.get_authorization_url("state-abc"))
        params = parse_qs(url.query)

        assert url.netloc == "xy12345.us-west-2.snowflakecomputing.com"
        assert url.path == "/oauth/authorize"
        assert params["response_type"] == ["code"]
        assert params["client_id"] == ["client-id"]
        assert params["scope"] == ["session:role:PUBLIC"]
        assert params["state"] == ["state-abc"]


class TestFromSettings:
    def test_not_configured(self):
        with pytest.raises(OAuthError):
            SnowflakeOAuthClient.from_settings(Settings(snowflake_oauth_account=None))

    def test_scopes_from_settings(self):
        settings = Settings(
            snowflake_oauth_account="xy12345",
            snowflake_oauth_client_id="client-id",
            snowflake_oauth_client_secret="client-secret",
            snowflake_oauth_redirect_uri="https://app.example/callback",
            snowflake_oauth_scopes="session:role:ANALYST refresh_token",
        )
        client = SnowflakeOAuthClient.from_settings(settings)
        assert client.scopes == ["session:role:ANALYST", "refresh_token"]


class TestTokenRequests:
    async def test_exchange_posts_form_with_basic_auth(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json=TOKEN_RESPONSE)

        tokens = await _client(handler).exchange_code_for_tokens("code-1")

        request = captured[0]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert request.url.path == "/oauth/token-request"
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["code-1"]

        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert tokens.expires_in == 600

    async def test_refresh_grant(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"access_token": "access-2", "expires_in": 600})

        tokens = await _client(handler).refresh_access_token("refresh-1")

        form = parse_qs(captured[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert tokens.refresh_token is None
        assert tokens.token_type == "Bearer"

    async def test_rejected_exchange(self):
        client = _client(lambda request: httpx.Response(400, text="invalid_grant"))

        with pytest.raises(OAuthError) as exc_info:
            await client.exchange_code_for_tokens("bad-code")

        assert exc_info.value.message == "Token exchange failed: 400 invalid_grant"

    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        with pytest.raises(OAuthError) as exc_info:
            await _client(handler).refresh_access_token("refresh-1")

        assert exc_info.value.message.startswith("Token refresh failed")

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json={"token_type": "Bearer"}),
            httpx.Response(200, text="<html>maintenance</html>"),
        ],
    )
    async def test_malformed_token_response(self, response):
        client = _client(lambda request: response)

        with pytest.raises(OAuthError) as exc_info:
            await client.exchange_code_for_tokens("code-1")

        assert exc_info.value.message == "Token exchange failed: malformed token response"


class TestCallbackPage:
    def test_success_page_posts_result(self):
        page = render_callback_html(OAuthCallbackResult(success=True, datasource_id="ds-1"))

        assert "&#10003; Connected" in page
        assert '"datasourceId": "ds-1"' in page
        assert "window.opener.postMessage" in page

    def test_error_is_escaped(self):
        page = render_callback_html(
            OAuthCallbackResult(success=False, error="<script>alert(1)</script>")
        )

        assert "<script>alert(1)" not in page
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in page
        assert "\\u003cscript\\u003e" in page

    def test_message_is_valid_json(self):
        page = render_callback_html(OAuthCallbackResult(success=False, error="a & b"))
        start = page.index("postMessage(") + len("postMessage(")
        end = page.index(", '*')", start)

        assert json.loads(page[start:end]) == {"success": False, "datasourceId": None, "error": "a & b"}
