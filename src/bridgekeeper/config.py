from __future__ import annotations

import os
from dataclasses import dataclass, field

from bridgekeeper.codec import KEY_ENV, LEGACY_KEY_ENV
from bridgekeeper.errors import ConfigurationError

DEFAULT_ALLOWED_DOMAINS: tuple[str, ...] = (
    "google.com",
    "microsoft.com",
    "linkedin.com",
    "github.com",
    "stackoverflow.com",
    "belastingdienst.nl",
    "kvk.nl",
    "mollie.com",
    "stripe.com",
)

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Process configuration read from ``BRIDGEKEEPER_*`` and provider variables."""

    encryption_key: str = field(repr=False)
    db_path: str = "./bridgekeeper.duckdb"
    google_client_id: str = ""
    google_client_secret: str = field(default="", repr=False)
    microsoft_client_id: str = ""
    microsoft_client_secret: str = field(default="", repr=False)
    token_timeout: float = 10.0
    allowed_domains: tuple[str, ...] = DEFAULT_ALLOWED_DOMAINS
    browser_headless: bool = True

    @classmethod
    def from_env(cls) -> Settings:
        encryption_key = os.getenv(KEY_ENV) or os.getenv(LEGACY_KEY_ENV)
        if not encryption_key:
            raise ConfigurationError(f"Set {KEY_ENV} (or {LEGACY_KEY_ENV}) to enable credential encryption.")

        try:
            token_timeout = float(os.getenv("BRIDGEKEEPER_TOKEN_TIMEOUT", "10"))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

        return cls(
            encryption_key=encryption_key,
            db_path=os.getenv("BRIDGEKEEPER_DB_PATH", "./bridgekeeper.duckdb"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", ""),
            microsoft_client_secret=os.getenv("MICROSOFT_CLIENT_SECRET", ""),
            token_timeout=token_timeout,
            allowed_domains=parse_domains(os.getenv("BRIDGEKEEPER_ALLOWED_DOMAINS")),
            browser_headless=env_flag("BRIDGEKEEPER_BROWSER_HEADLESS", default=True),
        )


def parse_domains(raw: str | None) -> tuple[str, ...]:
    if raw is None or not raw.strip():
        return DEFAULT_ALLOWED_DOMAINS
    domains = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return domains or DEFAULT_ALLOWED_DOMAINS


def env_flag(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY
