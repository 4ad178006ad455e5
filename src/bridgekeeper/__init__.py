from bridgekeeper.codec import SecretCodec, get_codec
from bridgekeeper.config import Settings
from bridgekeeper.credentials import CredentialManager
from bridgekeeper.errors import (
    ActionFailedError,
    BridgekeeperError,
    ConfigurationError,
    DecryptionError,
    DomainNotAllowedError,
    ExpiredNoRefreshError,
    NotConnectedError,
    RefreshFailedError,
    SessionClosedError,
)
from bridgekeeper.models import ConnectionStatus, Credentials, IntegrationStatus, Provider
from bridgekeeper.providers import GoogleRefresher, MicrosoftRefresher, TokenRefresher, refresher_for
from bridgekeeper.store import CredentialStore

__all__ = [
    "ActionFailedError",
    "BridgekeeperError",
    "ConfigurationError",
    "ConnectionStatus",
    "CredentialManager",
    "CredentialStore",
    "Credentials",
    "DecryptionError",
    "DomainNotAllowedError",
    "ExpiredNoRefreshError",
    "GoogleRefresher",
    "IntegrationStatus",
    "MicrosoftRefresher",
    "NotConnectedError",
    "Provider",
    "RefreshFailedError",
    "SecretCodec",
    "SessionClosedError",
    "Settings",
    "TokenRefresher",
    "get_codec",
    "refresher_for",
]
