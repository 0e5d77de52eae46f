# shared/slack_client.py

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from config import (
    HTTP_TIMEOUT_SECONDS, SLACK_API_BASE, SLACK_AUTHORIZE_URL,
    SLACK_CLIENT_ID, SLACK_CLIENT_SECRET, SLACK_REDIRECT_URI, SLACK_SCOPES
)
from shared.errors import OAuthExchangeError
from shared.models import (
    AuthExpired, Credential, Delivered, DeliveryResult, RefreshedCredential,
    RefreshFailure, RefreshResult, RemoteRejected, TransportFailure
)

logger = logging.getLogger(__name__)

# Slack error codes meaning the access token is no longer usable
AUTH_ERROR_CODES = frozenset({"invalid_auth", "token_expired"})


class SlackClient:
    """Thin async wrapper over the three Slack Web API calls the service needs.

    `deliver` and `refresh` never raise: every outcome is returned as a
    tagged result so the caller decides what to retry.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        scopes: str = SLACK_SCOPES,
        api_base: str = SLACK_API_BASE,
        authorize_url: str = SLACK_AUTHORIZE_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.api_base = api_base
        self.authorize_endpoint = authorize_url
        self.timeout = timeout
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
        )

    def authorize_url(self) -> str:
        params = {
            "client_id": self.client_id,
            "scope": self.scopes,
            "redirect_uri": self.redirect_uri,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def deliver(self, channel: str, text: str, access_token: str) -> DeliveryResult:
        try:
            async with self._http() as client:
                response = await client.post(
                    "chat.postMessage",
                    json={"channel": channel, "text": text},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"chat.postMessage to {channel} failed: {e!r}")
            return TransportFailure(cause=str(e) or type(e).__name__)

        if response.status_code != 200:
            return TransportFailure(cause=f"unexpected status {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            return TransportFailure(cause="response body is not JSON")
        if not isinstance(data, dict):
            return TransportFailure(cause="unexpected response body")

        if data.get("ok"):
            return Delivered(timestamp=str(data.get("ts", "")))

        error = data.get("error") or "unknown_error"
        if error in AUTH_ERROR_CODES:
            return AuthExpired(error=error)
        return RemoteRejected(reason=error)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        try:
            async with self._http() as client:
                response = await client.post(
                    "oauth.v2.access",
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Error refreshing Slack token: {e!r}")
            return RefreshFailure(reason=str(e) or type(e).__name__)

        if response.status_code != 200:
            return RefreshFailure(reason=f"unexpected status {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            return RefreshFailure(reason="response body is not JSON")
        if not isinstance(data, dict):
            return RefreshFailure(reason="unexpected response body")

        if not data.get("ok") or not data.get("access_token"):
            return RefreshFailure(reason=data.get("error") or "no access_token in response")

        return RefreshedCredential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
        )

    async def exchange_code(self, code: str) -> Credential:
        """Exchanges an OAuth authorization code for the initial credential.

        Raises:
            OAuthExchangeError: Slack refused the code (400) or the call
                itself failed (502).
        """
        try:
            async with self._http() as client:
                response = await client.post(
                    "oauth.v2.access",
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OAuthExchangeError(f"Token exchange failed: {e}", status_code=502) from e
        if not isinstance(data, dict):
            raise OAuthExchangeError("Token exchange failed: unexpected response body", status_code=502)

        if not data.get("ok") or not data.get("access_token"):
            raise OAuthExchangeError(data.get("error") or "token exchange rejected")

        return Credential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            team=data.get("team"),
            authed_user=data.get("authed_user"),
        )


_client_instance = None


def get_slack_client() -> SlackClient:
    global _client_instance
    if _client_instance is None:
        _client_instance = SlackClient(
            client_id=SLACK_CLIENT_ID,
            client_secret=SLACK_CLIENT_SECRET,
            redirect_uri=SLACK_REDIRECT_URI,
        )
    return _client_instance
