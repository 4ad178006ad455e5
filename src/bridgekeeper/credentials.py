from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bridgekeeper.codec import SecretCodec
from bridgekeeper.errors import (
    DecryptionError,
    ExpiredNoRefreshError,
    NotConnectedError,
    RefreshFailedError,
)
from bridgekeeper.models import ConnectionStatus, Credentials, CredentialRecord, IntegrationStatus, Provider
from bridgekeeper.store import CredentialStore

if TYPE_CHECKING:
    from bridgekeeper.providers import TokenRefresher

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


def status_from_record(record: CredentialRecord) -> IntegrationStatus:
    """Project a stored record onto the secret-free status view."""
    return IntegrationStatus(
        connected=record.status == ConnectionStatus.CONNECTED,
        status=record.status,
        connected_at=record.connected_at,
        expires_at=record.expires_at,
        last_sync=record.last_sync,
        error=record.last_error,
    )


class CredentialManager:
    """Credential lifecycle for one (owner, provider) pair.

    Construct one per logical operation. The decrypted view lives on the
    instance only; nothing is cached at module level.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: SecretCodec,
        owner_id: str,
        provider: Provider | str,
        refresher: TokenRefresher | None = None,
        *,
        actor: str = "system",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id is required")

        self._store = store
        self._codec = codec
        self.owner_id = owner_id
        self.provider = Provider(provider)
        self._refresher = refresher
        self._actor = actor
        self._clock = clock

        self._credentials: Credentials | None = None
        self._version: str | None = None
        self._settings: dict[str, Any] = {}

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @property
    def settings(self) -> dict[str, Any]:
        return dict(self._settings)

    async def load(self) -> Credentials:
        record = await asyncio.to_thread(self._store.get, self.provider, self.owner_id, actor=self._actor)
        if record is None or record.status != ConnectionStatus.CONNECTED:
            raise NotConnectedError(f"Integration {self.provider.value} not found or not connected")
        if not record.encrypted_access_token:
            raise NotConnectedError(f"Integration {self.provider.value} has no stored credentials")

        try:
            credentials = self._decrypt_record(record)
        except DecryptionError:
            logger.error(
                "stored credentials failed to decrypt",
                extra={"provider": self.provider.value, "owner_id": self.owner_id},
            )
            raise

        self._credentials = credentials
        self._version = record.encrypted_access_token
        self._settings = dict(record.settings)
        return credentials

    async def get_valid_access_token(self) -> str:
        credentials = self._credentials
        if credentials is None:
            credentials = await self.load()

        if not credentials.is_expired(self._clock()):
            return credentials.access_token

        if not credentials.refresh_token:
            logger.warning(
                "access token expired without refresh token",
                extra={"provider": self.provider.value, "owner_id": self.owner_id},
            )
            raise ExpiredNoRefreshError(
                f"Access token for {self.provider.value} expired and no refresh token is available"
            )

        refreshed = await self._refresh(credentials)
        return refreshed.access_token

    async def save(self, credentials: Credentials, settings: dict[str, Any] | None = None) -> CredentialRecord:
        encrypted_access, encrypted_refresh = self._encrypt(credentials)
        record = await asyncio.to_thread(
            self._store.upsert,
            provider=self.provider,
            owner_id=self.owner_id,
            encrypted_access_token=encrypted_access,
            encrypted_refresh_token=encrypted_refresh,
            scope=credentials.scope,
            expires_at=credentials.expires_at,
            settings=settings,
            actor=self._actor,
        )

        self._credentials = credentials
        self._version = encrypted_access
        self._settings = dict(record.settings)

        logger.info(
            "credentials saved",
            extra={
                "provider": self.provider.value,
                "owner_id": self.owner_id,
                "expires_at": credentials.expires_at.isoformat() if credentials.expires_at else None,
            },
        )
        return record

    async def disconnect(self) -> None:
        disconnected = await asyncio.to_thread(
            self._store.mark_disconnected, self.provider, self.owner_id, actor=self._actor
        )
        self._credentials = None
        self._version = None
        if not disconnected:
            raise NotConnectedError(f"Integration {self.provider.value} not found")

        logger.info("integration disconnected", extra={"provider": self.provider.value, "owner_id": self.owner_id})

    async def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        merged = await asyncio.to_thread(
            self._store.merge_settings, self.provider, self.owner_id, partial, actor=self._actor
        )
        if merged is None:
            raise NotConnectedError(f"Integration {self.provider.value} not found")
        self._settings = merged
        return dict(merged)

    async def get_status(self) -> IntegrationStatus:
        record = await asyncio.to_thread(self._store.get, self.provider, self.owner_id, actor=self._actor)
        if record is None:
            return IntegrationStatus(connected=False)
        return status_from_record(record)

    async def record_sync(self, error: str | None = None) -> None:
        synced = await asyncio.to_thread(
            self._store.record_sync, self.provider, self.owner_id, error=error, actor=self._actor
        )
        if not synced:
            raise NotConnectedError(f"Integration {self.provider.value} not found")

    async def _refresh(self, credentials: Credentials) -> Credentials:
        if self._refresher is None:
            raise RefreshFailedError(
                f"No refresh handler for provider: {self.provider.value}",
                provider=self.provider.value,
            )

        try:
            refreshed = await self._refresher.refresh(credentials)
        except RefreshFailedError as exc:
            self._log_refresh_failure(exc)
            raise
        except Exception as exc:
            self._log_refresh_failure(exc)
            raise RefreshFailedError(
                f"Token refresh for {self.provider.value} failed: {exc}",
                provider=self.provider.value,
            ) from exc

        if not refreshed.refresh_token:
            refreshed = replace(refreshed, refresh_token=credentials.refresh_token)

        encrypted_access, encrypted_refresh = self._encrypt(refreshed)
        swapped = await asyncio.to_thread(
            self._store.swap_tokens,
            provider=self.provider,
            owner_id=self.owner_id,
            expected_access_token=self._version or "",
            encrypted_access_token=encrypted_access,
            encrypted_refresh_token=encrypted_refresh,
            scope=refreshed.scope,
            expires_at=refreshed.expires_at,
            actor=self._actor,
        )

        if not swapped:
            # Another operation replaced the token while this refresh was in flight.
            logger.info(
                "concurrent refresh detected, reloading",
                extra={"provider": self.provider.value, "owner_id": self.owner_id},
            )
            current = await self.load()
            if current.is_expired(self._clock()):
                raise RefreshFailedError(
                    f"Credentials for {self.provider.value} changed during refresh",
                    provider=self.provider.value,
                )
            return current

        self._credentials = refreshed
        self._version = encrypted_access
        logger.info(
            "access token refreshed",
            extra={
                "provider": self.provider.value,
                "owner_id": self.owner_id,
                "expires_at": refreshed.expires_at.isoformat() if refreshed.expires_at else None,
            },
        )
        return refreshed

    def _encrypt(self, credentials: Credentials) -> tuple[str, str | None]:
        if not credentials.access_token:
            raise ValueError("access_token must be a non-empty string")
        encrypted_refresh = None
        if credentials.refresh_token:
            encrypted_refresh = self._codec.encrypt(credentials.refresh_token)
        return self._codec.encrypt(credentials.access_token), encrypted_refresh

    def _decrypt_record(self, record: CredentialRecord) -> Credentials:
        access_token = self._codec.decrypt(record.encrypted_access_token or "")
        refresh_token = None
        if record.encrypted_refresh_token:
            refresh_token = self._codec.decrypt(record.encrypted_refresh_token)
        return Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=record.expires_at,
            scope=record.scope,
        )

    def _log_refresh_failure(self, exc: Exception) -> None:
        logger.error(
            "token refresh failed",
            extra={
                "provider": self.provider.value,
                "owner_id": self.owner_id,
                "error_type": type(exc).__name__,
            },
        )
