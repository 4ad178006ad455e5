from __future__ import annotations

import os
from typing import Any

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from bridgekeeper.browser import ACTION_TYPES, BrowserSession, DomainAllowList, parse_actions, run_actions, with_start_url
from bridgekeeper.browser.runner import SessionFactory
from bridgekeeper.codec import SecretCodec, get_codec
from bridgekeeper.config import env_flag, parse_domains
from bridgekeeper.credentials import CredentialManager, status_from_record
from bridgekeeper.models import IntegrationStatus, Provider
from bridgekeeper.store import CredentialStore

mcp = FastMCP("Bridgekeeper")
_store: CredentialStore | None = None
_codec: SecretCodec | None = None
_session_factory: SessionFactory | None = None


def _get_store() -> CredentialStore:
    global _store
    if _store is None:
        db_path = os.getenv("BRIDGEKEEPER_DB_PATH", "./bridgekeeper.duckdb")
        _store = CredentialStore(db_path=db_path)
    return _store


def _get_codec() -> SecretCodec:
    return _codec or get_codec()


def _allow_list() -> DomainAllowList:
    return DomainAllowList(parse_domains(os.getenv("BRIDGEKEEPER_ALLOWED_DOMAINS")))


def _get_session_factory() -> SessionFactory:
    if _session_factory is not None:
        return _session_factory
    headless = env_flag("BRIDGEKEEPER_BROWSER_HEADLESS", default=True)
    return lambda allow_list: BrowserSession(allow_list, headless=headless)


@mcp.tool(description="List supported browser actions and the navigation allow-list")
def browser_capabilities() -> dict[str, Any]:
    return {
        "available": True,
        "capabilities": list(ACTION_TYPES),
        "allowed_domains": list(_allow_list().domains),
    }


@mcp.tool(
    description=(
        "Run browser actions in order in a fresh headless session. Stops at the first failed action. "
        "Each action is an object with a 'type' of navigate, click, type, select, upload, extract, "
        "screenshot or wait."
    )
)
async def browser_execute(
    actions: list[dict[str, Any]],
    url: str | None = None,
    include_screenshot: bool = False,
) -> dict[str, Any]:
    try:
        batch = parse_actions(actions)
    except ValidationError as exc:
        return {"success": False, "error": f"Invalid actions: {exc.error_count()} validation error(s)", "results": []}

    batch = with_start_url(batch, url)
    if not batch:
        return {"success": False, "error": "No actions provided", "results": []}

    report = await run_actions(
        batch,
        allow_list=_allow_list(),
        include_screenshot=include_screenshot,
        session_factory=_get_session_factory(),
    )
    return report.to_dict()


@mcp.tool(description="Show whether an integration is connected, without exposing tokens")
async def integration_status(owner_id: str, provider: str, actor: str = "mcp") -> dict[str, Any]:
    manager = CredentialManager(_get_store(), _get_codec(), owner_id, Provider(provider), actor=actor)
    return _status_dict(owner_id, manager.provider, await manager.get_status())


@mcp.tool(description="List the connected integrations of one user, without exposing tokens")
def list_integrations(owner_id: str) -> dict[str, Any]:
    records = _get_store().list_for_owner(owner_id)
    return {
        "owner_id": owner_id,
        "integrations": [
            _status_dict(owner_id, record.provider, status_from_record(record)) for record in records
        ],
    }


def _status_dict(owner_id: str, provider: Provider, status: IntegrationStatus) -> dict[str, Any]:
    return {
        "owner_id": owner_id,
        "provider": provider.value,
        "connected": status.connected,
        "status": status.status.value if status.status else None,
        "connected_at": status.connected_at.isoformat() if status.connected_at else None,
        "expires_at": status.expires_at.isoformat() if status.expires_at else None,
        "last_sync": status.last_sync.isoformat() if status.last_sync else None,
        "error": status.error,
    }


def main() -> None:
    mcp.run(transport=os.getenv("BRIDGEKEEPER_MCP_TRANSPORT", "stdio"))


if __name__ == "__main__":
    main()
