from __future__ import annotations


class BridgekeeperError(Exception):
    """Base error for bridgekeeper failures."""


class ConfigurationError(BridgekeeperError):
    """Raised when required configuration is missing or invalid."""


class CredentialError(BridgekeeperError):
    """Base error for credential lifecycle failures."""


class NotConnectedError(CredentialError):
    """No usable credential record exists for the owner and provider."""


class DecryptionError(CredentialError):
    """Stored ciphertext is malformed or has been tampered with.

    Never retried: it means either data corruption or a changed encryption key.
    """


class ExpiredNoRefreshError(CredentialError):
    """The access token expired and there is no refresh token to renew it."""


class RefreshFailedError(CredentialError):
    """The provider refresh call failed. The stored record is left untouched."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class BrowserError(BridgekeeperError):
    """Base error for browser automation failures."""


class DomainNotAllowedError(BrowserError):
    """Navigation target is outside the allow-list."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Domain not allowed: {url}. Please request access for this domain.")
        self.url = url


class ActionFailedError(BrowserError):
    """A single browser action failed in the underlying driver."""

    def __init__(self, message: str, *, action_type: str | None = None) -> None:
        super().__init__(message)
        self.action_type = action_type


class SessionClosedError(BrowserError):
    """An action was issued after the browser session was closed."""
