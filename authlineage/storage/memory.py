from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from authlineage.logging import get_logger
from authlineage.storage.errors import ConstraintViolation
from authlineage.storage.models import TokenRecord, User, utcnow


class MemoryStore:
    """In-process backing store for tests and single-node development.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    write so a restarted dev server keeps its users and token records.
    Records handed out are copies; callers never mutate stored rows directly.
    """

    def __init__(self, fs_root: str = "/tmp/authlineage", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.token_records: Dict[int, TokenRecord] = {}
        self._user_id_seq: int = 1
        self._token_id_seq: int = 1
        self._seq_lock = threading.Lock()
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        """Nothing to reach; present so health checks treat both stores alike."""

    def _next_user_id(self) -> int:
        with self._seq_lock:
            value = self._user_id_seq
            self._user_id_seq += 1
            return value

    def _next_token_id(self) -> int:
        with self._seq_lock:
            value = self._token_id_seq
            self._token_id_seq += 1
            return value

    # users
    def create_user(self, email: str, name: str, *, is_admin: bool = False) -> User:
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(self._next_user_id(), email, name, is_admin=is_admin)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == lowered), None)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_uuid(self, user_uuid: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.uuid == user_uuid), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return replace(user) if user else None

    def update_user_email(self, user_id: int, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            existing = self._find_user_by_email(email)
            if existing and existing.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = email
            user.email_verified_at = None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_admin(self, user_id: int, is_admin: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = is_admin
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
                user.updated_at = user.email_verified_at
                self._persist_state()
            return replace(user)

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            # Outstanding password-reset links are bound to updated_at
            user.updated_at = max(utcnow(), user.updated_at + timedelta(microseconds=1))
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # token records
    def create_token_record(
        self,
        user_id: int,
        *,
        version: int = 1,
        expiration_minutes: Optional[int] = None,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("token owner does not exist", {"user_id": user_id})
            record = TokenRecord.new(
                self._next_token_id(),
                user_id,
                version=version,
                expiration_minutes=expiration_minutes,
                name=name,
                now=now,
            )
            self.token_records[record.id] = record
            self._persist_state()
            return replace(record)

    def get_token_record(self, user_uuid: str, record_uuid: str) -> Optional[TokenRecord]:
        with self._data_lock:
            for record in self.token_records.values():
                if record.uuid != record_uuid:
                    continue
                owner = self.users.get(record.user_id)
                if owner and owner.uuid == user_uuid:
                    return replace(record)
                return None
            return None

    def advance_token_version(
        self, record_id: int, expected_version: int, expires_at: Optional[datetime]
    ) -> Optional[TokenRecord]:
        """Compare-and-swap the rotation marker.

        Returns the updated record, or ``None`` when the record is gone or its
        version no longer equals ``expected_version``.
        """
        with self._data_lock:
            record = self.token_records.get(record_id)
            if not record or record.version != expected_version:
                return None
            record.version = expected_version + 1
            record.expires_at = expires_at
            self._persist_state()
            return replace(record)

    def delete_token_record(self, record_id: int) -> bool:
        with self._data_lock:
            removed = self.token_records.pop(record_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_token_records(self, user_id: int) -> int:
        with self._data_lock:
            stale = [rid for rid, rec in self.token_records.items() if rec.user_id == user_id]
            for rid in stale:
                self.token_records.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_token_records(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                rid for rid, rec in self.token_records.items() if rec.is_expired(now)
            ]
            for rid in expired:
                self.token_records.pop(rid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def list_user_token_records(self, user_id: int) -> List[TokenRecord]:
        with self._data_lock:
            records = [
                replace(rec) for rec in self.token_records.values() if rec.user_id == user_id
            ]
            return sorted(records, key=lambda rec: rec.created_at, reverse=True)

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "uuid": user.uuid,
            "email": user.email,
            "name": user.name,
            "is_admin": user.is_admin,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        return User(
            id=int(data["id"]),
            uuid=data["uuid"],
            email=data["email"],
            name=data.get("name", ""),
            is_admin=bool(data.get("is_admin", False)),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_token_record(self, record: TokenRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "uuid": record.uuid,
            "user_id": record.user_id,
            "version": record.version,
            "name": record.name,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_token_record(self, data: Dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            id=int(data["id"]),
            uuid=data["uuid"],
            user_id=int(data["user_id"]),
            version=int(data["version"]),
            name=data.get("name"),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "token_records": [
                self._serialize_token_record(r) for r in self.token_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(entry["user_id"]): (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.token_records = {
            int(r["id"]): self._deserialize_token_record(r)
            for r in data.get("token_records", [])
        }
        self._user_id_seq = max(self.users, default=0) + 1
        self._token_id_seq = max(self.token_records, default=0) + 1
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            token_records=len(self.token_records),
        )
        return True
