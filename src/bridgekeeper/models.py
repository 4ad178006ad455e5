from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


class Provider(str, enum.Enum):
    GMAIL = "GMAIL"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    GOOGLE_DRIVE = "GOOGLE_DRIVE"
    OUTLOOK_MAIL = "OUTLOOK_MAIL"
    OUTLOOK_CALENDAR = "OUTLOOK_CALENDAR"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Credentials:
    """Decrypted token material. Only ever held in memory.

    A naive ``expires_at`` is taken to be UTC.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    scope: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=UTC))

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


@dataclass(frozen=True)
class CredentialRecord:
    provider: Provider
    owner_id: str
    encrypted_access_token: str | None = field(repr=False)
    encrypted_refresh_token: str | None = field(repr=False)
    scope: tuple[str, ...]
    expires_at: datetime | None
    status: ConnectionStatus
    connected_at: datetime | None
    last_sync: datetime | None
    last_error: str | None
    settings: dict[str, Any]
    updated_at: datetime


@dataclass(frozen=True)
class IntegrationStatus:
    connected: bool
    status: ConnectionStatus | None = None
    connected_at: datetime | None = None
    expires_at: datetime | None = None
    last_sync: datetime | None = None
    error: str | None = None


@dataclass(frozen=True)
class AuditEvent:
    operation: str
    actor: str
    status: str
    error: str | None
    created_at: datetime
