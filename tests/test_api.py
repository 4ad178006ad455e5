from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from bridgekeeper import ConfigurationError, Credentials, RefreshFailedError, SecretCodec, Settings, TokenRefresher
from bridgekeeper.api import create_app
from bridgekeeper.browser import ActionResult, SessionState
from bridgekeeper.store import CredentialStore

PAST = "2020-01-01T00:00:00Z"
FUTURE = "2099-01-01T00:00:00Z"


class FakeRefresher(TokenRefresher):
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    async def refresh(self, credentials: Credentials) -> Credentials:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Credentials(
            access_token="refreshed-access",
            refresh_token=credentials.refresh_token,
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )


class StubSession:
    """Records batches instead of driving a browser."""

    batches = []

    def __init__(self, allow_list):
        self.allow_list = allow_list
        self.state = SessionState.UNINITIALIZED

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.state = SessionState.CLOSED

    async def execute_sequence(self, actions):
        StubSession.batches.append(list(actions))
        return [ActionResult(success=True, data={"message": action.type}) for action in actions]


def _client(tmp_path, refresher=None, factory_error=None):
    store = CredentialStore(tmp_path / "api.duckdb")
    settings = Settings(encryption_key="api-test-secret", allowed_domains=("kvk.nl",))

    def refresher_factory(provider, app_settings):
        if factory_error is not None:
            raise factory_error
        return refresher or FakeRefresher()

    app = create_app(
        store=store,
        codec=SecretCodec(settings.encryption_key),
        settings=settings,
        refresher_factory=refresher_factory,
        session_factory=StubSession,
    )
    return TestClient(app), store


def _save(client, **overrides):
    payload = {
        "owner_id": "user-1",
        "provider": "GMAIL",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": FUTURE,
        "scope": ["gmail.readonly"],
        "settings": {"label": "inbox"},
    }
    payload.update(overrides)
    return client.put("/v1/integrations", json=payload)


def test_integration_lifecycle(tmp_path):
    client, store = _client(tmp_path)

    save_resp = _save(client)
    assert save_resp.status_code == 200
    body = save_resp.json()
    assert body["connected"] is True
    assert body["status"] == "CONNECTED"
    assert "access_token" not in body

    status_resp = client.get("/v1/integrations/user-1/GMAIL")
    assert status_resp.status_code == 200
    assert status_resp.json()["expires_at"].startswith("2099-01-01T00:00:00")

    token_resp = client.post("/v1/integrations/user-1/GMAIL/token")
    assert token_resp.status_code == 200
    assert token_resp.json()["access_token"] == "access-1"

    settings_resp = client.patch(
        "/v1/integrations/user-1/GMAIL/settings",
        json={"settings": {"sync_interval": 15}},
    )
    assert settings_resp.status_code == 200
    assert settings_resp.json()["settings"] == {"label": "inbox", "sync_interval": 15}

    sync_resp = client.post("/v1/integrations/user-1/GMAIL/sync", json={"error": "quota"})
    assert sync_resp.status_code == 200
    assert sync_resp.json()["error"] == "quota"
    assert sync_resp.json()["last_sync"] is not None

    del_resp = client.delete("/v1/integrations/user-1/GMAIL")
    assert del_resp.status_code == 200
    assert del_resp.json()["disconnected"] is True

    after = client.get("/v1/integrations/user-1/GMAIL").json()
    assert after["connected"] is False
    assert after["status"] == "DISCONNECTED"

    missing_token = client.post("/v1/integrations/user-1/GMAIL/token")
    assert missing_token.status_code == 404

    audit_resp = client.get("/v1/integrations/user-1/GMAIL/audit")
    assert audit_resp.status_code == 200
    operations = [event["operation"] for event in audit_resp.json()]
    assert operations[0] == "save"
    assert operations[-1] == "disconnect"

    store.close()


def test_token_endpoint_refreshes_expired_credentials(tmp_path):
    refresher = FakeRefresher()
    client, store = _client(tmp_path, refresher=refresher)
    _save(client, expires_at=PAST)

    token_resp = client.post("/v1/integrations/user-1/GMAIL/token")
    assert token_resp.status_code == 200
    assert token_resp.json()["access_token"] == "refreshed-access"
    assert refresher.calls == 1

    store.close()


def test_token_endpoint_error_mapping(tmp_path):
    client, store = _client(tmp_path, refresher=FakeRefresher(error=RefreshFailedError("invalid_grant")))

    _save(client, expires_at=PAST)
    assert client.post("/v1/integrations/user-1/GMAIL/token").status_code == 502

    _save(client, expires_at=PAST, refresh_token=None)
    assert client.post("/v1/integrations/user-1/GMAIL/token").status_code == 409

    assert client.post("/v1/integrations/nobody/GMAIL/token").status_code == 404

    store.close()


def test_unconfigured_provider_still_serves_valid_tokens(tmp_path):
    client, store = _client(tmp_path, factory_error=ConfigurationError("microsoft OAuth client credentials not configured"))

    _save(client, provider="OUTLOOK_MAIL")
    assert client.post("/v1/integrations/user-1/OUTLOOK_MAIL/token").json()["access_token"] == "access-1"

    _save(client, provider="OUTLOOK_MAIL", expires_at=PAST)
    assert client.post("/v1/integrations/user-1/OUTLOOK_MAIL/token").status_code == 502

    store.close()


def test_request_validation(tmp_path):
    client, store = _client(tmp_path)

    assert _save(client, provider="SLACK").status_code == 422
    assert _save(client, access_token="").status_code == 422
    assert client.get("/v1/integrations/user-1/SLACK").status_code == 422
    assert client.patch("/v1/integrations/nobody/GMAIL/settings", json={"settings": {}}).status_code == 404
    assert client.delete("/v1/integrations/nobody/GMAIL").json()["disconnected"] is False

    store.close()


def test_browser_endpoints(tmp_path):
    client, store = _client(tmp_path)
    StubSession.batches.clear()

    capabilities = client.get("/v1/browser/capabilities").json()
    assert capabilities["available"] is True
    assert "navigate" in capabilities["capabilities"]
    assert capabilities["allowed_domains"] == ["kvk.nl"]

    run_resp = client.post(
        "/v1/browser/actions",
        json={"url": "https://kvk.nl", "actions": [{"type": "click", "selector": "#zoek"}]},
    )
    assert run_resp.status_code == 200
    body = run_resp.json()
    assert body["success"] is True
    assert body["summary"] == {"total": 2, "succeeded": 2, "failed": 0}
    assert [action.type for action in StubSession.batches[-1]] == ["navigate", "click"]

    single = client.post("/v1/browser/actions", json={"action": {"type": "wait", "timeout": 10}})
    assert single.status_code == 200
    assert single.json()["summary"]["total"] == 1

    assert client.post("/v1/browser/actions", json={}).status_code == 400
    assert client.post("/v1/browser/actions", json={"actions": [{"type": "hover"}]}).status_code == 422

    store.close()


def test_bearer_auth_when_configured(tmp_path, monkeypatch):
    monkeypatch.setenv("BRIDGEKEEPER_BEARER_TOKEN", "test-token")
    client, store = _client(tmp_path)

    assert client.get("/health").status_code == 200

    missing = client.get("/v1/integrations/user-1/GMAIL")
    assert missing.status_code == 401

    wrong = client.get("/v1/integrations/user-1/GMAIL", headers={"Authorization": "Bearer wrong-token"})
    assert wrong.status_code == 401

    ok = client.get("/v1/integrations/user-1/GMAIL", headers={"Authorization": "Bearer test-token"})
    assert ok.status_code == 200
    assert ok.json()["connected"] is False

    store.close()


def test_lifespan_builds_dependencies_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("BRIDGEKEEPER_ENCRYPTION_KEY", "lifespan-secret")
    monkeypatch.setenv("BRIDGEKEEPER_DB_PATH", str(tmp_path / "lifespan.duckdb"))
    monkeypatch.delenv("BRIDGEKEEPER_BEARER_TOKEN", raising=False)

    with TestClient(create_app()) as client:
        assert client.get("/health").json() == {"status": "ok"}
        assert _save(client).status_code == 200
        assert client.post("/v1/integrations/user-1/GMAIL/token").json()["access_token"] == "access-1"

    assert (tmp_path / "lifespan.duckdb").exists()


def test_list_integrations_for_owner(tmp_path):
    client, store = _client(tmp_path)
    _save(client)
    _save(client, provider="OUTLOOK_CALENDAR", expires_at=None)
    _save(client, provider="GOOGLE_DRIVE")
    _save(client, owner_id="user-2")
    client.delete("/v1/integrations/user-1/GOOGLE_DRIVE")

    listed = client.get("/v1/integrations/user-1")
    assert listed.status_code == 200
    body = listed.json()
    assert [item["provider"] for item in body] == ["GMAIL", "OUTLOOK_CALENDAR"]
    assert all(item["connected"] is True for item in body)
    assert all(item["connected_at"] is not None for item in body)
    assert body[0]["expires_at"].startswith("2099-01-01T00:00:00")
    assert body[1]["expires_at"] is None
    assert all("access_token" not in item for item in body)

    everything = client.get("/v1/integrations/user-1", params={"include_disconnected": True}).json()
    assert [item["status"] for item in everything] == ["CONNECTED", "DISCONNECTED", "CONNECTED"]

    assert client.get("/v1/integrations/nobody").json() == []

    store.close()


def test_status_includes_connected_at_and_accepts_naive_expiry(tmp_path):
    client, store = _client(tmp_path)

    saved = _save(client, expires_at="2099-01-01T00:00:00")
    assert saved.status_code == 200
    assert saved.json()["connected_at"] is not None
    assert saved.json()["expires_at"].startswith("2099-01-01T00:00:00")

    token_resp = client.post("/v1/integrations/user-1/GMAIL/token")
    assert token_resp.status_code == 200
    assert token_resp.json()["access_token"] == "access-1"

    store.close()
