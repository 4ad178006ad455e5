from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb

from bridgekeeper.models import AuditEvent, ConnectionStatus, CredentialRecord, Provider

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = """
    provider,
    owner_id,
    access_ciphertext,
    refresh_ciphertext,
    scope,
    expires_at,
    status,
    connected_at,
    last_sync,
    last_error,
    settings,
    updated_at
"""


class CredentialStore:
    """DuckDB persistence for encrypted integration credentials.

    Holds one row per (provider, owner_id). Token columns only ever contain
    codec ciphertext; rows are soft-disconnected, never deleted.
    """

    def __init__(self, db_path: str | os.PathLike[str]) -> None:
        self._db_path = str(Path(db_path))
        self._lock = threading.RLock()
        self._conn = duckdb.connect(self._db_path)
        self._initialize()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get(self, provider: Provider, owner_id: str, *, actor: str = "system") -> CredentialRecord | None:
        self._validate_non_empty(owner_id, "owner_id")
        provider = Provider(provider)

        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM integrations
                WHERE provider = ? AND owner_id = ?
                """,
                [provider.value, owner_id],
            ).fetchone()

        if row is None:
            self._audit(operation="get", actor=actor, status="miss", provider=provider, owner_id=owner_id)
            return None
        return self._row_to_record(row)

    def list_for_owner(self, owner_id: str, *, include_disconnected: bool = False) -> list[CredentialRecord]:
        """All integrations of one owner, connected ones only unless asked otherwise."""
        self._validate_non_empty(owner_id, "owner_id")

        query = f"SELECT {_RECORD_COLUMNS} FROM integrations WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if not include_disconnected:
            query += " AND status = ?"
            params.append(ConnectionStatus.CONNECTED.value)
        query += " ORDER BY provider"

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def upsert(
        self,
        *,
        provider: Provider,
        owner_id: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str | None,
        scope: list[str] | tuple[str, ...] | None = None,
        expires_at: datetime | None = None,
        settings: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> CredentialRecord:
        self._validate_non_empty(owner_id, "owner_id")
        self._validate_non_empty(encrypted_access_token, "encrypted_access_token")
        provider = Provider(provider)
        now = int(time.time())

        try:
            with self._lock:
                existing = self._conn.execute(
                    "SELECT status, connected_at FROM integrations WHERE provider = ? AND owner_id = ?",
                    [provider.value, owner_id],
                ).fetchone()

                if existing is None:
                    self._conn.execute(
                        """
                        INSERT INTO integrations (
                            provider,
                            owner_id,
                            access_ciphertext,
                            refresh_ciphertext,
                            scope,
                            expires_at,
                            status,
                            connected_at,
                            last_sync,
                            last_error,
                            settings,
                            created_at,
                            updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?, ?)
                        """,
                        [
                            provider.value,
                            owner_id,
                            encrypted_access_token,
                            encrypted_refresh_token,
                            json.dumps(list(scope or [])),
                            self._to_epoch(expires_at),
                            ConnectionStatus.CONNECTED.value,
                            now,
                            json.dumps(settings or {}, separators=(",", ":")),
                            now,
                            now,
                        ],
                    )
                else:
                    # A reconnect after a disconnect counts as a fresh connection.
                    connected_at = existing[1]
                    if existing[0] == ConnectionStatus.DISCONNECTED.value or connected_at is None:
                        connected_at = now

                    self._conn.execute(
                        """
                        UPDATE integrations
                        SET access_ciphertext = ?,
                            refresh_ciphertext = ?,
                            scope = ?,
                            expires_at = ?,
                            status = ?,
                            connected_at = ?,
                            settings = COALESCE(?, settings),
                            updated_at = ?
                        WHERE provider = ? AND owner_id = ?
                        """,
                        [
                            encrypted_access_token,
                            encrypted_refresh_token,
                            json.dumps(list(scope or [])),
                            self._to_epoch(expires_at),
                            ConnectionStatus.CONNECTED.value,
                            connected_at,
                            json.dumps(settings, separators=(",", ":")) if settings is not None else None,
                            now,
                            provider.value,
                            owner_id,
                        ],
                    )
            self._audit(operation="save", actor=actor, status="ok", provider=provider, owner_id=owner_id)
        except Exception as exc:
            self._audit(
                operation="save",
                actor=actor,
                status="error",
                provider=provider,
                owner_id=owner_id,
                error=str(exc),
            )
            raise

        record = self.get(provider, owner_id, actor=actor)
        if record is None:
            raise RuntimeError("record not found after save")
        return record

    def swap_tokens(
        self,
        *,
        provider: Provider,
        owner_id: str,
        expected_access_token: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str | None,
        scope: list[str] | tuple[str, ...] | None,
        expires_at: datetime | None,
        actor: str = "system",
    ) -> bool:
        """Replace token material only if the stored access ciphertext is unchanged."""
        self._validate_non_empty(owner_id, "owner_id")
        self._validate_non_empty(encrypted_access_token, "encrypted_access_token")
        provider = Provider(provider)

        with self._lock:
            swapped = (
                self._conn.execute(
                    """
                    UPDATE integrations
                    SET access_ciphertext = ?,
                        refresh_ciphertext = ?,
                        scope = ?,
                        expires_at = ?,
                        updated_at = ?
                    WHERE provider = ?
                      AND owner_id = ?
                      AND status = ?
                      AND access_ciphertext = ?
                    RETURNING 1
                    """,
                    [
                        encrypted_access_token,
                        encrypted_refresh_token,
                        json.dumps(list(scope or [])),
                        self._to_epoch(expires_at),
                        int(time.time()),
                        provider.value,
                        owner_id,
                        ConnectionStatus.CONNECTED.value,
                        expected_access_token,
                    ],
                ).fetchone()
                is not None
            )

        self._audit(
            operation="refresh",
            actor=actor,
            status="ok" if swapped else "conflict",
            provider=provider,
            owner_id=owner_id,
        )
        return swapped

    def merge_settings(
        self,
        provider: Provider,
        owner_id: str,
        partial: dict[str, Any],
        *,
        actor: str = "system",
    ) -> dict[str, Any] | None:
        self._validate_non_empty(owner_id, "owner_id")
        provider = Provider(provider)

        with self._lock:
            row = self._conn.execute(
                "SELECT settings FROM integrations WHERE provider = ? AND owner_id = ?",
                [provider.value, owner_id],
            ).fetchone()
            if row is None:
                self._audit(operation="settings", actor=actor, status="miss", provider=provider, owner_id=owner_id)
                return None

            merged = {**json.loads(row[0]), **partial}
            self._conn.execute(
                "UPDATE integrations SET settings = ?, updated_at = ? WHERE provider = ? AND owner_id = ?",
                [json.dumps(merged, separators=(",", ":")), int(time.time()), provider.value, owner_id],
            )

        self._audit(operation="settings", actor=actor, status="ok", provider=provider, owner_id=owner_id)
        return merged

    def mark_disconnected(self, provider: Provider, owner_id: str, *, actor: str = "system") -> bool:
        self._validate_non_empty(owner_id, "owner_id")
        provider = Provider(provider)

        with self._lock:
            updated = (
                self._conn.execute(
                    """
                    UPDATE integrations
                    SET status = ?,
                        access_ciphertext = NULL,
                        refresh_ciphertext = NULL,
                        updated_at = ?
                    WHERE provider = ? AND owner_id = ?
                    RETURNING 1
                    """,
                    [ConnectionStatus.DISCONNECTED.value, int(time.time()), provider.value, owner_id],
                ).fetchone()
                is not None
            )

        self._audit(
            operation="disconnect",
            actor=actor,
            status="ok" if updated else "miss",
            provider=provider,
            owner_id=owner_id,
        )
        return updated

    def record_sync(
        self,
        provider: Provider,
        owner_id: str,
        *,
        error: str | None = None,
        actor: str = "system",
    ) -> bool:
        self._validate_non_empty(owner_id, "owner_id")
        provider = Provider(provider)

        with self._lock:
            updated = (
                self._conn.execute(
                    """
                    UPDATE integrations
                    SET last_sync = ?, last_error = ?, updated_at = ?
                    WHERE provider = ? AND owner_id = ?
                    RETURNING 1
                    """,
                    [int(time.time()), error[:500] if error else None, int(time.time()), provider.value, owner_id],
                ).fetchone()
                is not None
            )

        self._audit(
            operation="sync",
            actor=actor,
            status=("error" if error else "ok") if updated else "miss",
            provider=provider,
            owner_id=owner_id,
            error=error[:500] if error else None,
        )
        return updated

    def audit_trail(self, provider: Provider, owner_id: str, *, limit: int = 50) -> list[AuditEvent]:
        provider = Provider(provider)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT operation, actor, status, error, created_at
                FROM audit_log
                WHERE provider = ? AND owner_id = ?
                ORDER BY rowid DESC
                LIMIT ?
                """,
                [provider.value, owner_id, limit],
            ).fetchall()

        return [
            AuditEvent(
                operation=row[0],
                actor=row[1],
                status=row[2],
                error=row[3],
                created_at=datetime.fromtimestamp(row[4], tz=UTC),
            )
            for row in reversed(rows)
        ]

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS integrations (
                    provider TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    access_ciphertext TEXT,
                    refresh_ciphertext TEXT,
                    scope TEXT NOT NULL,
                    expires_at BIGINT,
                    status TEXT NOT NULL,
                    connected_at BIGINT,
                    last_sync BIGINT,
                    last_error TEXT,
                    settings TEXT NOT NULL,
                    created_at BIGINT NOT NULL,
                    updated_at BIGINT NOT NULL,
                    UNIQUE(provider, owner_id)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    event_id TEXT PRIMARY KEY,
                    operation TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider TEXT,
                    owner_id TEXT,
                    error TEXT,
                    created_at BIGINT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_integration_lookup
                ON integrations (provider, owner_id)
                """
            )

    def _audit(
        self,
        *,
        operation: str,
        actor: str,
        status: str,
        provider: Provider | None = None,
        owner_id: str | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO audit_log (
                    event_id,
                    operation,
                    actor,
                    status,
                    provider,
                    owner_id,
                    error,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    str(uuid.uuid4()),
                    operation,
                    actor,
                    status,
                    provider.value if provider is not None else None,
                    owner_id,
                    error,
                    int(time.time()),
                ],
            )
        if status == "error":
            logger.warning(
                "credential store operation failed",
                extra={"operation": operation, "provider": provider.value if provider else None, "owner_id": owner_id},
            )

    @staticmethod
    def _row_to_record(row: tuple[Any, ...]) -> CredentialRecord:
        return CredentialRecord(
            provider=Provider(row[0]),
            owner_id=row[1],
            encrypted_access_token=row[2],
            encrypted_refresh_token=row[3],
            scope=tuple(json.loads(row[4])),
            expires_at=CredentialStore._from_epoch(row[5]),
            status=ConnectionStatus(row[6]),
            connected_at=CredentialStore._from_epoch(row[7]),
            last_sync=CredentialStore._from_epoch(row[8]),
            last_error=row[9],
            settings=json.loads(row[10]),
            updated_at=datetime.fromtimestamp(row[11], tz=UTC),
        )

    @staticmethod
    def _to_epoch(value: datetime | None) -> int | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp())

    @staticmethod
    def _from_epoch(value: int | None) -> datetime | None:
        if value is None:
            return None
        return datetime.fromtimestamp(value, tz=UTC)

    @staticmethod
    def _validate_non_empty(value: str, field_name: str) -> None:
        if not value or not value.strip():
            raise ValueError(f"{field_name} must be a non-empty string")
