from __future__ import annotations

from datetime import UTC, datetime

import pytest

from bridgekeeper import ConnectionStatus, CredentialStore, Provider, SecretCodec


def _codec() -> SecretCodec:
    return SecretCodec("store-test-secret")


def test_upsert_round_trip(tmp_path):
    store = CredentialStore(tmp_path / "round.duckdb")
    codec = _codec()
    expires = datetime(2026, 2, 9, 10, 0, tzinfo=UTC)

    record = store.upsert(
        provider=Provider.GMAIL,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("access-abc"),
        encrypted_refresh_token=codec.encrypt("refresh-xyz"),
        scope=["gmail.readonly", "gmail.send"],
        expires_at=expires,
        settings={"label": "inbox"},
    )

    assert record.status == ConnectionStatus.CONNECTED
    assert record.connected_at is not None
    assert record.expires_at == expires
    assert record.scope == ("gmail.readonly", "gmail.send")
    assert record.settings == {"label": "inbox"}
    assert codec.decrypt(record.encrypted_access_token) == "access-abc"
    assert codec.decrypt(record.encrypted_refresh_token) == "refresh-xyz"

    assert store.get(Provider.GMAIL, "user-2") is None
    assert store.get(Provider.OUTLOOK_MAIL, "user-1") is None

    store.close()


def test_update_keeps_settings_unless_supplied(tmp_path):
    store = CredentialStore(tmp_path / "update.duckdb")
    codec = _codec()

    first = store.upsert(
        provider=Provider.GOOGLE_DRIVE,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("a1"),
        encrypted_refresh_token=None,
        settings={"folder": "root"},
    )
    second = store.upsert(
        provider=Provider.GOOGLE_DRIVE,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("a2"),
        encrypted_refresh_token=None,
        scope=["drive.file"],
    )

    assert second.settings == {"folder": "root"}
    assert second.scope == ("drive.file",)
    assert second.connected_at == first.connected_at
    assert codec.decrypt(second.encrypted_access_token) == "a2"

    store.close()


def test_values_are_encrypted_at_rest(tmp_path):
    db_path = tmp_path / "encrypted.duckdb"
    store = CredentialStore(db_path)
    codec = _codec()

    store.upsert(
        provider=Provider.OUTLOOK_MAIL,
        owner_id="user-z",
        encrypted_access_token=codec.encrypt("visible-access-token"),
        encrypted_refresh_token=codec.encrypt("visible-refresh-token"),
    )
    store.close()

    raw = db_path.read_bytes()
    assert b"visible-access-token" not in raw
    assert b"visible-refresh-token" not in raw


def test_swap_tokens_requires_unchanged_ciphertext(tmp_path):
    store = CredentialStore(tmp_path / "swap.duckdb")
    codec = _codec()
    record = store.upsert(
        provider=Provider.GOOGLE_CALENDAR,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("old"),
        encrypted_refresh_token=codec.encrypt("refresh"),
    )

    stale = store.swap_tokens(
        provider=Provider.GOOGLE_CALENDAR,
        owner_id="user-1",
        expected_access_token=codec.encrypt("old"),
        encrypted_access_token=codec.encrypt("lost"),
        encrypted_refresh_token=record.encrypted_refresh_token,
        scope=(),
        expires_at=None,
    )
    assert stale is False

    swapped = store.swap_tokens(
        provider=Provider.GOOGLE_CALENDAR,
        owner_id="user-1",
        expected_access_token=record.encrypted_access_token,
        encrypted_access_token=codec.encrypt("new"),
        encrypted_refresh_token=record.encrypted_refresh_token,
        scope=("calendar",),
        expires_at=None,
    )
    assert swapped is True

    current = store.get(Provider.GOOGLE_CALENDAR, "user-1")
    assert current is not None
    assert codec.decrypt(current.encrypted_access_token) == "new"
    assert current.scope == ("calendar",)

    store.close()


def test_disconnect_is_soft(tmp_path):
    store = CredentialStore(tmp_path / "disconnect.duckdb")
    codec = _codec()
    store.upsert(
        provider=Provider.GMAIL,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("a"),
        encrypted_refresh_token=codec.encrypt("r"),
        settings={"keep": True},
    )

    assert store.mark_disconnected(Provider.GMAIL, "user-1") is True
    record = store.get(Provider.GMAIL, "user-1")
    assert record is not None
    assert record.status == ConnectionStatus.DISCONNECTED
    assert record.encrypted_access_token is None
    assert record.encrypted_refresh_token is None
    assert record.settings == {"keep": True}

    assert store.mark_disconnected(Provider.GMAIL, "nobody") is False

    store.close()


def test_merge_settings_and_sync_bookkeeping(tmp_path):
    store = CredentialStore(tmp_path / "settings.duckdb")
    codec = _codec()
    store.upsert(
        provider=Provider.OUTLOOK_CALENDAR,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("a"),
        encrypted_refresh_token=None,
        settings={"a": 1, "b": 2},
    )

    assert store.merge_settings(Provider.OUTLOOK_CALENDAR, "user-1", {"b": 3, "c": 4}) == {"a": 1, "b": 3, "c": 4}
    assert store.merge_settings(Provider.OUTLOOK_CALENDAR, "missing", {"x": 1}) is None

    assert store.record_sync(Provider.OUTLOOK_CALENDAR, "user-1", error="rate limited") is True
    record = store.get(Provider.OUTLOOK_CALENDAR, "user-1")
    assert record is not None
    assert record.last_sync is not None
    assert record.last_error == "rate limited"
    assert record.status == ConnectionStatus.CONNECTED

    store.close()


def test_audit_trail_has_no_secrets(tmp_path):
    store = CredentialStore(tmp_path / "audit.duckdb")
    codec = _codec()
    store.upsert(
        provider=Provider.GMAIL,
        owner_id="user-a",
        encrypted_access_token=codec.encrypt("audit-secret"),
        encrypted_refresh_token=None,
        actor="tester",
    )
    store.mark_disconnected(Provider.GMAIL, "user-a", actor="tester")

    events = store.audit_trail(Provider.GMAIL, "user-a")
    operations = [event.operation for event in events]
    assert "save" in operations
    assert operations[-1] == "disconnect"
    assert all(event.actor == "tester" for event in events)
    assert all("audit-secret" not in (event.error or "") for event in events)

    store.close()


def test_rejects_empty_owner(tmp_path):
    store = CredentialStore(tmp_path / "empty.duckdb")
    with pytest.raises(ValueError):
        store.get(Provider.GMAIL, "")
    store.close()


def test_list_for_owner(tmp_path):
    store = CredentialStore(tmp_path / "list.duckdb")
    codec = _codec()
    for provider in (Provider.OUTLOOK_MAIL, Provider.GMAIL, Provider.GOOGLE_DRIVE):
        store.upsert(
            provider=provider,
            owner_id="user-1",
            encrypted_access_token=codec.encrypt("a"),
            encrypted_refresh_token=None,
        )
    store.upsert(
        provider=Provider.GMAIL,
        owner_id="user-2",
        encrypted_access_token=codec.encrypt("other"),
        encrypted_refresh_token=None,
    )
    store.mark_disconnected(Provider.GOOGLE_DRIVE, "user-1")

    connected = store.list_for_owner("user-1")
    assert [record.provider for record in connected] == [Provider.GMAIL, Provider.OUTLOOK_MAIL]
    assert all(record.connected_at is not None for record in connected)

    everything = store.list_for_owner("user-1", include_disconnected=True)
    assert [record.provider for record in everything] == [
        Provider.GMAIL,
        Provider.GOOGLE_DRIVE,
        Provider.OUTLOOK_MAIL,
    ]
    assert everything[1].status == ConnectionStatus.DISCONNECTED

    assert store.list_for_owner("nobody") == []

    store.close()


def test_naive_expiry_is_stored_as_utc(tmp_path):
    store = CredentialStore(tmp_path / "naive.duckdb")
    codec = _codec()

    record = store.upsert(
        provider=Provider.GMAIL,
        owner_id="user-1",
        encrypted_access_token=codec.encrypt("a"),
        encrypted_refresh_token=None,
        expires_at=datetime(2030, 6, 1, 8, 30),
    )

    assert record.expires_at == datetime(2030, 6, 1, 8, 30, tzinfo=UTC)

    store.close()
