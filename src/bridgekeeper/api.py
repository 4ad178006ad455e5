from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from bridgekeeper.browser import (
    ACTION_TYPES,
    BrowserAction,
    BrowserSession,
    DomainAllowList,
    run_actions,
    with_start_url,
)
from bridgekeeper.browser.runner import SessionFactory
from bridgekeeper.codec import SecretCodec
from bridgekeeper.config import Settings
from bridgekeeper.credentials import CredentialManager, status_from_record
from bridgekeeper.errors import (
    ConfigurationError,
    CredentialError,
    DecryptionError,
    ExpiredNoRefreshError,
    NotConnectedError,
    RefreshFailedError,
)
from bridgekeeper.models import Credentials, IntegrationStatus, Provider
from bridgekeeper.providers import TokenRefresher, refresher_for
from bridgekeeper.store import CredentialStore

logger = logging.getLogger(__name__)

BEARER_TOKEN_ENV = "BRIDGEKEEPER_BEARER_TOKEN"

RefresherFactory = Callable[[Provider, Settings], TokenRefresher]


class IntegrationSaveRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    provider: Provider
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: list[str] = Field(default_factory=list)
    settings: dict[str, Any] | None = None
    actor: str = "api"


class SettingsPatchRequest(BaseModel):
    settings: dict[str, Any]
    actor: str = "api"


class SyncRequest(BaseModel):
    error: str | None = None
    actor: str = "api"


class BrowserRunRequest(BaseModel):
    action: BrowserAction | None = None
    actions: list[BrowserAction] = Field(default_factory=list)
    url: str | None = None
    include_screenshot: bool = False


class StatusResponse(BaseModel):
    owner_id: str
    provider: Provider
    connected: bool
    status: str | None
    connected_at: datetime | None
    expires_at: datetime | None
    last_sync: datetime | None
    error: str | None


class TokenResponse(BaseModel):
    access_token: str
    expires_at: datetime | None


class SettingsResponse(BaseModel):
    settings: dict[str, Any]


class DisconnectResponse(BaseModel):
    disconnected: bool


class AuditEventResponse(BaseModel):
    operation: str
    actor: str
    status: str
    error: str | None
    created_at: datetime


def create_app(
    store: CredentialStore | None = None,
    codec: SecretCodec | None = None,
    settings: Settings | None = None,
    refresher_factory: RefresherFactory | None = None,
    session_factory: SessionFactory | None = None,
) -> FastAPI:
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Refuse to start without an encryption secret.
        if app.state.settings is None:
            app.state.settings = Settings.from_env()
        if app.state.codec is None:
            app.state.codec = SecretCodec(app.state.settings.encryption_key)
        if owns_store:
            app.state.store = CredentialStore(db_path=app.state.settings.db_path)

        yield

        if owns_store:
            app.state.store.close()

    app = FastAPI(title="Bridgekeeper", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.codec = codec
    app.state.settings = settings
    app.state.refresher_factory = refresher_factory or refresher_for
    app.state.session_factory = session_factory

    def get_store(request: Request) -> CredentialStore:
        return request.app.state.store

    def get_codec(request: Request) -> SecretCodec:
        return request.app.state.codec

    def require_bearer(authorization: str | None = Header(default=None)) -> None:
        expected = os.getenv(BEARER_TOKEN_ENV)
        if not expected:
            return

        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(
                status_code=401,
                detail="missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        presented = authorization[7:]
        if not secrets.compare_digest(presented, expected):
            raise HTTPException(
                status_code=401,
                detail="invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    def manager_for(
        request: Request,
        owner_id: str,
        provider: Provider,
        actor: str,
        refresher: TokenRefresher | None = None,
    ) -> CredentialManager:
        try:
            return CredentialManager(
                get_store(request),
                get_codec(request),
                owner_id,
                provider,
                refresher,
                actor=actor,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.put(
        "/v1/integrations",
        response_model=StatusResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def save_integration(payload: IntegrationSaveRequest, request: Request) -> StatusResponse:
        manager = manager_for(request, payload.owner_id, payload.provider, payload.actor)
        credentials = Credentials(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=payload.expires_at,
            scope=tuple(payload.scope),
        )
        try:
            await manager.save(credentials, settings=payload.settings)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _status_response(payload.owner_id, payload.provider, await manager.get_status())

    @app.get(
        "/v1/integrations/{owner_id}",
        response_model=list[StatusResponse],
        dependencies=[Depends(require_bearer)],
    )
    def list_integrations(
        owner_id: str,
        request: Request,
        include_disconnected: bool = Query(default=False),
    ) -> list[StatusResponse]:
        try:
            records = get_store(request).list_for_owner(owner_id, include_disconnected=include_disconnected)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return [_status_response(owner_id, record.provider, status_from_record(record)) for record in records]

    @app.get(
        "/v1/integrations/{owner_id}/{provider}",
        response_model=StatusResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def get_integration_status(
        owner_id: str,
        provider: Provider,
        request: Request,
        actor: str = Query(default="api"),
    ) -> StatusResponse:
        manager = manager_for(request, owner_id, provider, actor)
        return _status_response(owner_id, provider, await manager.get_status())

    @app.post(
        "/v1/integrations/{owner_id}/{provider}/token",
        response_model=TokenResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def get_access_token(
        owner_id: str,
        provider: Provider,
        request: Request,
        actor: str = Query(default="api"),
    ) -> TokenResponse:
        refresher = _build_refresher(request, provider)
        manager = manager_for(request, owner_id, provider, actor, refresher)
        try:
            access_token = await manager.get_valid_access_token()
        except CredentialError as exc:
            raise _credential_http_error(exc) from exc

        expires_at = manager.credentials.expires_at if manager.credentials else None
        return TokenResponse(access_token=access_token, expires_at=expires_at)

    @app.patch(
        "/v1/integrations/{owner_id}/{provider}/settings",
        response_model=SettingsResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def update_settings(
        owner_id: str,
        provider: Provider,
        payload: SettingsPatchRequest,
        request: Request,
    ) -> SettingsResponse:
        manager = manager_for(request, owner_id, provider, payload.actor)
        try:
            merged = await manager.update_settings(payload.settings)
        except CredentialError as exc:
            raise _credential_http_error(exc) from exc
        return SettingsResponse(settings=merged)

    @app.post(
        "/v1/integrations/{owner_id}/{provider}/sync",
        response_model=StatusResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def record_sync(
        owner_id: str,
        provider: Provider,
        payload: SyncRequest,
        request: Request,
    ) -> StatusResponse:
        manager = manager_for(request, owner_id, provider, payload.actor)
        try:
            await manager.record_sync(error=payload.error)
        except CredentialError as exc:
            raise _credential_http_error(exc) from exc
        return _status_response(owner_id, provider, await manager.get_status())

    @app.delete(
        "/v1/integrations/{owner_id}/{provider}",
        response_model=DisconnectResponse,
        dependencies=[Depends(require_bearer)],
    )
    async def disconnect_integration(
        owner_id: str,
        provider: Provider,
        request: Request,
        actor: str = Query(default="api"),
    ) -> DisconnectResponse:
        manager = manager_for(request, owner_id, provider, actor)
        try:
            await manager.disconnect()
        except NotConnectedError:
            return DisconnectResponse(disconnected=False)
        return DisconnectResponse(disconnected=True)

    @app.get(
        "/v1/integrations/{owner_id}/{provider}/audit",
        response_model=list[AuditEventResponse],
        dependencies=[Depends(require_bearer)],
    )
    def audit_trail(
        owner_id: str,
        provider: Provider,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[AuditEventResponse]:
        events = get_store(request).audit_trail(provider, owner_id, limit=limit)
        return [
            AuditEventResponse(
                operation=event.operation,
                actor=event.actor,
                status=event.status,
                error=event.error,
                created_at=event.created_at,
            )
            for event in events
        ]

    @app.get("/v1/browser/capabilities", dependencies=[Depends(require_bearer)])
    def browser_capabilities(request: Request) -> dict[str, Any]:
        return {
            "available": True,
            "capabilities": list(ACTION_TYPES),
            "allowed_domains": list(_allow_list(request).domains),
        }

    @app.post("/v1/browser/actions", dependencies=[Depends(require_bearer)])
    async def run_browser_actions(payload: BrowserRunRequest, request: Request) -> dict[str, Any]:
        batch = [payload.action] if payload.action is not None else list(payload.actions)
        if not batch:
            raise HTTPException(status_code=400, detail="No actions provided")

        report = await run_actions(
            with_start_url(batch, payload.url),
            allow_list=_allow_list(request),
            include_screenshot=payload.include_screenshot,
            session_factory=_session_factory(request),
        )
        return report.to_dict()

    return app


def _allow_list(request: Request) -> DomainAllowList:
    settings: Settings | None = request.app.state.settings
    if settings is None:
        return DomainAllowList()
    return DomainAllowList(settings.allowed_domains)


def _session_factory(request: Request) -> SessionFactory:
    factory = request.app.state.session_factory
    if factory is not None:
        return factory
    settings: Settings | None = request.app.state.settings
    headless = settings.browser_headless if settings is not None else True
    return lambda allow_list: BrowserSession(allow_list, headless=headless)


def _build_refresher(request: Request, provider: Provider) -> TokenRefresher | None:
    settings: Settings | None = request.app.state.settings
    if settings is None:
        return None
    try:
        return request.app.state.refresher_factory(provider, settings)
    except ConfigurationError as exc:
        # Unexpired tokens still work; an expired one surfaces RefreshFailedError.
        logger.warning("token refresher unavailable", extra={"provider": provider.value, "reason": str(exc)})
        return None


def _credential_http_error(exc: CredentialError) -> HTTPException:
    if isinstance(exc, NotConnectedError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExpiredNoRefreshError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, RefreshFailedError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, DecryptionError):
        return HTTPException(status_code=500, detail="stored credentials could not be decrypted")
    return HTTPException(status_code=500, detail=str(exc))


def _status_response(owner_id: str, provider: Provider, status: IntegrationStatus) -> StatusResponse:
    return StatusResponse(
        owner_id=owner_id,
        provider=provider,
        connected=status.connected,
        status=status.status.value if status.status else None,
        connected_at=status.connected_at,
        expires_at=status.expires_at,
        last_sync=status.last_sync,
        error=status.error,
    )
