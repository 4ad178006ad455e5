from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from bridgekeeper.config import Settings
from bridgekeeper.errors import ConfigurationError, RefreshFailedError
from bridgekeeper.models import Credentials, Provider

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

MICROSOFT_MAIL_SCOPE = "https://graph.microsoft.com/Mail.Read https://graph.microsoft.com/Mail.Send"
MICROSOFT_CALENDAR_SCOPE = "https://graph.microsoft.com/Calendars.ReadWrite"


class TokenRefresher(abc.ABC):
    """Exchanges a refresh token for new credentials. Never persists anything."""

    @abc.abstractmethod
    async def refresh(self, credentials: Credentials) -> Credentials:
        raise NotImplementedError


class OAuth2Refresher(TokenRefresher):
    """``grant_type=refresh_token`` exchange against an OAuth2 token endpoint."""

    name = "oauth2"

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ConfigurationError(f"{self.name} OAuth client credentials not configured")
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._timeout = timeout
        self._client = client
        self._clock = clock or (lambda: datetime.now(UTC))

    async def refresh(self, credentials: Credentials) -> Credentials:
        if not credentials.refresh_token:
            raise RefreshFailedError("No refresh token available", provider=self.name)

        payload = self._payload(credentials.refresh_token)
        if self._client is not None:
            response = await self._client.post(self._token_url, data=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._token_url, data=payload)

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "token endpoint rejected refresh",
                extra={"provider": self.name, "status_code": response.status_code},
            )
            raise RefreshFailedError(
                f"{self.name} token refresh failed: {response.status_code} {response.reason_phrase}".rstrip(),
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RefreshFailedError(f"{self.name} token endpoint returned invalid JSON", provider=self.name) from exc

        return self._to_credentials(data, credentials)

    def _payload(self, refresh_token: str) -> dict[str, str]:
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._scope:
            payload["scope"] = self._scope
        return payload

    def _to_credentials(self, data: Any, current: Credentials) -> Credentials:
        if not isinstance(data, dict) or not data.get("access_token"):
            raise RefreshFailedError(f"{self.name} token response missing access_token", provider=self.name)

        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = self._clock() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError) as exc:
                raise RefreshFailedError(f"{self.name} token response has invalid expires_in", provider=self.name) from exc

        scope = current.scope
        if isinstance(data.get("scope"), str) and data["scope"].strip():
            scope = tuple(data["scope"].split())

        return Credentials(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or current.refresh_token,
            expires_at=expires_at,
            scope=scope,
        )


class GoogleRefresher(OAuth2Refresher):
    name = "google"

    def __init__(self, *, client_id: str, client_secret: str, **kwargs: Any) -> None:
        super().__init__(token_url=GOOGLE_TOKEN_URL, client_id=client_id, client_secret=client_secret, **kwargs)


class MicrosoftRefresher(OAuth2Refresher):
    name = "microsoft"

    def __init__(self, *, client_id: str, client_secret: str, scope: str, **kwargs: Any) -> None:
        super().__init__(
            token_url=MICROSOFT_TOKEN_URL,
            client_id=client_id,
            client_secret=client_secret,
            scope=scope,
            **kwargs,
        )


def refresher_for(
    provider: Provider | str,
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> TokenRefresher:
    provider = Provider(provider)
    if provider in (Provider.GMAIL, Provider.GOOGLE_CALENDAR, Provider.GOOGLE_DRIVE):
        return GoogleRefresher(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            timeout=settings.token_timeout,
            client=client,
        )

    scope = MICROSOFT_MAIL_SCOPE if provider == Provider.OUTLOOK_MAIL else MICROSOFT_CALENDAR_SCOPE
    return MicrosoftRefresher(
        client_id=settings.microsoft_client_id,
        client_secret=settings.microsoft_client_secret,
        scope=scope,
        timeout=settings.token_timeout,
        client=client,
    )
