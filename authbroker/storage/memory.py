from __future__ import annotations

import json
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

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

_PROFILE_FIELDS = ("email", "name", "nickname", "picture")


class MemoryStore:
    """In-process user and session store with a JSON snapshot on disk.

    Refresh tokens are encrypted in the snapshot; lookups by token go through
    a SHA-256 fingerprint index.
    """

    def __init__(
        self, fs_root: str = "/tmp/authbroker", *, encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}  # user_id -> row
        self._fingerprints: Dict[str, str] = {}  # fingerprint -> user_id
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._cipher = RefreshTokenCipher(encryption_key)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

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
        with self._data_lock:
            if any(existing.subject == subject for existing in self.users.values()):
                raise ConstraintViolation("subject already exists", {"field": "subject"})
            user = User(
                id=str(uuid.uuid4()),
                subject=subject,
                email=email,
                name=name,
                nickname=nickname,
                picture=picture,
                role=role,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.subject == subject), None)

    def upsert_user_profile(self, subject: str, profile: Dict[str, Any]) -> User:
        """Find or create the user for ``subject`` and record a login."""
        with self._data_lock:
            user = self.get_user_by_subject(subject)
            if user is None:
                user = self.create_user(
                    subject, **{k: profile.get(k) for k in _PROFILE_FIELDS}
                )
            for key in _PROFILE_FIELDS:
                if profile.get(key):
                    setattr(user, key, profile[key])
            user.last_login_at = utcnow()
            self._persist_state()
            return user

    # sessions
    def replace_session(
        self,
        user_id: str,
        refresh_token: str,
        *,
        ttl_days: int = 30,
        custom_data: Optional[SessionCustomData] = None,
    ) -> SessionRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            self._drop_session(user_id)
            record = SessionRecord.new(
                user_id, refresh_token, ttl_days=ttl_days, custom_data=custom_data
            )
            self.sessions[user_id] = record
            self._fingerprints[refresh_token_fingerprint(refresh_token)] = user_id
            self._persist_state()
            return record

    def get_session_for_user(self, user_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(user_id)
            if record is None or record.is_expired():
                return None
            return record

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            user_id = self._fingerprints.get(refresh_token_fingerprint(refresh_token))
            if user_id is None:
                return None
            return self.get_session_for_user(user_id)

    def update_session_token(
        self, user_id: str, refresh_token: str
    ) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.get_session_for_user(user_id)
            if record is None:
                return None
            self._fingerprints.pop(refresh_token_fingerprint(record.refresh_token), None)
            now = utcnow()
            record.refresh_token = refresh_token
            record.last_used_at = now
            record.updated_at = now
            self._fingerprints[refresh_token_fingerprint(refresh_token)] = user_id
            self._persist_state()
            return record

    def touch_session(self, user_id: str) -> None:
        with self._data_lock:
            record = self.sessions.get(user_id)
            if record is None:
                return
            record.last_used_at = utcnow()
            self._persist_state()

    def mark_session_reauth(self, user_id: str, reason: str) -> bool:
        with self._data_lock:
            record = self.sessions.get(user_id)
            if record is None:
                return False
            record.requires_reauth = True
            record.reauth_reason = reason
            record.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_session(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self._drop_session(user_id)
            if removed:
                self._persist_state()
            return removed

    def purge_expired_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            stale = [uid for uid, rec in self.sessions.items() if rec.is_expired(now)]
            for user_id in stale:
                self._drop_session(user_id)
            if stale:
                self._persist_state()
            return len(stale)

    def _drop_session(self, user_id: str) -> bool:
        record = self.sessions.pop(user_id, None)
        if record is None:
            return False
        self._fingerprints.pop(refresh_token_fingerprint(record.refresh_token), None)
        return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return as_utc(dt).isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "subject": user.subject,
            "email": user.email,
            "name": user.name,
            "nickname": user.nickname,
            "picture": user.picture,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            subject=data["subject"],
            email=data.get("email"),
            name=data.get("name"),
            nickname=data.get("nickname"),
            picture=data.get("picture"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, record: SessionRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "refresh_token_enc": self._cipher.encrypt(record.refresh_token),
            "expires_at": self._serialize_datetime(record.expires_at),
            "last_used_at": self._serialize_datetime(record.last_used_at),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "requires_reauth": record.requires_reauth,
            "reauth_reason": record.reauth_reason,
            "custom_data": custom_data_to_dict(record.custom_data),
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        return SessionRecord(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=self._cipher.decrypt(data["refresh_token_enc"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")) or utcnow(),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            requires_reauth=bool(data.get("requires_reauth", False)),
            reauth_reason=data.get("reauth_reason"),
            custom_data=custom_data_from_dict(data.get("custom_data")),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {}
        self._fingerprints = {}
        for raw in data.get("sessions", []):
            try:
                record = self._deserialize_session(raw)
            except (CorruptRecordError, ValueError) as exc:
                # Key rotation or a hand-edited snapshot; the user must log in again
                self.logger.warning(
                    "memory_store_session_dropped", user_id=raw.get("user_id"), error=str(exc)
                )
                continue
            self.sessions[record.user_id] = record
            self._fingerprints[refresh_token_fingerprint(record.refresh_token)] = record.user_id
        return True


class InMemoryCache:
    """Process-local keyed TTL store with the same surface as ``RedisCache``.

    Only safe for a single process: state tokens and PKCE contexts issued
    here are invisible to other replicas.
    """

    _PURGE_INTERVAL_SECONDS = 60.0

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def verify_connection(self) -> None:
        return None

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge < self._PURGE_INTERVAL_SECONDS:
            return
        expired: List[str] = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for key in expired:
            self._entries.pop(key, None)
        self._last_purge = now

    async def set_json(self, key: str, payload: dict, ttl_seconds: float) -> None:
        now = self._clock()
        with self._lock:
            self._maybe_purge(now)
            self._entries[key] = (now + ttl_seconds, json.dumps(payload))

    async def pop_json(self, key: str) -> Optional[dict]:
        """Atomically remove and return ``key``; expired entries count as absent."""
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry[0] <= now:
            return None
        return json.loads(entry[1])

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
