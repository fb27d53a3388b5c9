from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authbroker.logging import get_logger
from authbroker.storage.crypto import RefreshTokenCipher, refresh_token_fingerprint
from authbroker.storage.errors import ConstraintViolation, CorruptRecordError
from authbroker.storage.models import (
    SessionCustomData,
    SessionRecord,
    User,
    as_utc,
    custom_data_from_dict,
    custom_data_to_dict,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL UNIQUE,
        email TEXT,
        name TEXT,
        nickname TEXT,
        picture TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_enc TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        requires_reauth BOOLEAN NOT NULL DEFAULT false,
        reauth_reason TEXT,
        custom_data JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)",
    "CREATE INDEX IF NOT EXISTS auth_session_refresh_token_hash_idx ON auth_session (refresh_token_hash)",
)

_PROFILE_FIELDS = ("email", "name", "nickname", "picture")


class PostgresStore:
    """Postgres-backed users and refresh-token sessions."""

    def __init__(self, dsn: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = RefreshTokenCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            subject=row["subject"],
            email=row.get("email"),
            name=row.get("name"),
            nickname=row.get("nickname"),
            picture=row.get("picture"),
            role=row.get("role") or "user",
            created_at=as_utc(row.get("created_at") or utcnow()),
            last_login_at=as_utc(row["last_login_at"]) if row.get("last_login_at") else None,
        )

    def _session_from_row(self, row: Dict[str, Any]) -> Optional[SessionRecord]:
        try:
            refresh_token = self._cipher.decrypt(row["refresh_token_enc"])
            custom_data = custom_data_from_dict(row.get("custom_data"))
        except (CorruptRecordError, ValueError) as exc:
            # Unreadable rows behave as absent; the user logs in again and replaces them
            self.logger.warning(
                "auth_session_row_unreadable", user_id=row.get("user_id"), error=str(exc)
            )
            return None
        return SessionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=refresh_token,
            expires_at=as_utc(row["expires_at"]),
            last_used_at=as_utc(row["last_used_at"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            requires_reauth=bool(row.get("requires_reauth")),
            reauth_reason=row.get("reauth_reason"),
            custom_data=custom_data,
        )

    # users
    def create_user(
        self,
        subject: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        nickname: Optional[str] = None,
        picture: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, subject, email, name, nickname, picture, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, subject, email, name, nickname, picture, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("subject already exists", {"field": "subject"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE subject = %s", (subject,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def upsert_user_profile(self, subject: str, profile: Dict[str, Any]) -> User:
        """Insert or refresh the user for ``subject``; empty profile values keep stored ones."""
        values = [profile.get(key) or None for key in _PROFILE_FIELDS]
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, subject, email, name, nickname, picture, last_login_at)
                VALUES (%s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (subject) DO UPDATE
                SET email = COALESCE(EXCLUDED.email, app_user.email),
                    name = COALESCE(EXCLUDED.name, app_user.name),
                    nickname = COALESCE(EXCLUDED.nickname, app_user.nickname),
                    picture = COALESCE(EXCLUDED.picture, app_user.picture),
                    last_login_at = now()
                RETURNING *
                """,
                (str(uuid.uuid4()), subject, *values),
            ).fetchone()
        return self._user_from_row(row)

    # sessions
    def replace_session(
        self,
        user_id: str,
        refresh_token: str,
        *,
        ttl_days: int = 30,
        custom_data: Optional[SessionCustomData] = None,
    ) -> SessionRecord:
        now = utcnow()
        expires_at: datetime = now + timedelta(days=ttl_days)
        payload = custom_data_to_dict(custom_data)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token_enc, refresh_token_hash,
                        last_used_at, expires_at, custom_data, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET id = EXCLUDED.id,
                        refresh_token_enc = EXCLUDED.refresh_token_enc,
                        refresh_token_hash = EXCLUDED.refresh_token_hash,
                        last_used_at = EXCLUDED.last_used_at,
                        expires_at = EXCLUDED.expires_at,
                        requires_reauth = false,
                        reauth_reason = NULL,
                        custom_data = EXCLUDED.custom_data,
                        created_at = EXCLUDED.created_at,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        self._cipher.encrypt(refresh_token),
                        refresh_token_fingerprint(refresh_token),
                        now,
                        expires_at,
                        json.dumps(payload) if payload else None,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return SessionRecord(
            id=str(row["id"]),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=as_utc(row["expires_at"]),
            last_used_at=as_utc(row["last_used_at"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            custom_data=custom_data,
        )

    def get_session_for_user(self, user_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s AND expires_at > now()",
                (user_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s AND expires_at > now()",
                (refresh_token_fingerprint(refresh_token),),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_token(
        self, user_id: str, refresh_token: str
    ) -> Optional[SessionRecord]:
        """Store a rotated refresh token; the row keeps its original expiry."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_enc = %s,
                    refresh_token_hash = %s,
                    last_used_at = now(),
                    updated_at = now()
                WHERE user_id = %s AND expires_at > now()
                RETURNING *
                """,
                (
                    self._cipher.encrypt(refresh_token),
                    refresh_token_fingerprint(refresh_token),
                    user_id,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = now() WHERE user_id = %s",
                (user_id,),
            )

    def mark_session_reauth(self, user_id: str, reason: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET requires_reauth = true, reauth_reason = %s, updated_at = now()
                WHERE user_id = %s
                """,
                (reason, user_id),
            )
            return cur.rowcount > 0

    def delete_session(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= now()")
            removed = cur.rowcount
        if removed:
            self.logger.info("auth_sessions_purged", count=removed)
        return removed
