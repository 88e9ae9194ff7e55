from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple

from authlineage.config import Settings
from authlineage.logging import get_logger
from authlineage.service.codec import InvalidTokenError, TokenCodec
from authlineage.service.errors import INVALID_TOKEN_MESSAGE, TokenRejectedError, ValidationError
from authlineage.storage.models import TokenRecord, User, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_token_record(
        self,
        user_id: int,
        *,
        version: int = 1,
        expiration_minutes: Optional[int] = None,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenRecord: ...

    def get_token_record(self, user_uuid: str, record_uuid: str) -> Optional[TokenRecord]: ...

    def advance_token_version(
        self, record_id: int, expected_version: int, expires_at: Optional[datetime]
    ) -> Optional[TokenRecord]: ...

    def delete_token_record(self, record_id: int) -> bool: ...

    def delete_user_token_records(self, user_id: int) -> int: ...

    def delete_expired_token_records(self, now: datetime) -> int: ...

    def list_user_token_records(self, user_id: int) -> List[TokenRecord]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class IssuedTokens:
    """Tokens handed to a client together with the record that backs them."""

    record: TokenRecord
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "token_uuid": self.record.uuid,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        return body


class TokenService:
    """Issues, validates, rotates and revokes record-backed bearer tokens.

    Every token names a ``TokenRecord`` (``token`` claim) and the record
    version it was minted for. A token is honoured only while that record
    exists, is unexpired and still holds the same version, so deleting or
    rotating the record revokes tokens without any denylist.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    def _claims(self, record: TokenRecord, user: User, *, refresh: bool) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": user.uuid,
            "token": record.uuid,
            "version": record.version,
        }
        if refresh:
            claims["refresh"] = True
        return claims

    def create_record(
        self,
        user: User,
        *,
        version: int = 1,
        expiration_minutes: Optional[int] = None,
        name: Optional[str] = None,
    ) -> TokenRecord:
        record = self.store.create_token_record(
            user.id,
            version=version,
            expiration_minutes=expiration_minutes,
            name=name,
            now=self._now(),
        )
        self.logger.info(
            "token_record_created",
            user_uuid=user.uuid,
            record_uuid=record.uuid,
            named=name is not None,
            expires_at=record.expires_at.isoformat() if record.expires_at else None,
        )
        return record

    def build_token_pair(self, record: TokenRecord, user: User) -> TokenPair:
        now = self._now()
        access_ttl = self.settings.access_token_ttl_minutes
        refresh_ttl = self.settings.refresh_token_ttl_minutes
        access_token = self.codec.sign(
            self._claims(record, user, refresh=False), expires_in_minutes=access_ttl
        )
        refresh_token = self.codec.sign(
            self._claims(record, user, refresh=True), expires_in_minutes=refresh_ttl
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + timedelta(minutes=access_ttl),
            refresh_expires_at=now + timedelta(minutes=refresh_ttl),
        )

    def _issued(self, record: TokenRecord, pair: TokenPair) -> IssuedTokens:
        return IssuedTokens(
            record=record,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.access_expires_at,
        )

    def create_and_issue_pair(self, user: User) -> IssuedTokens:
        record = self.create_record(
            user, expiration_minutes=self.settings.refresh_token_ttl_minutes
        )
        return self._issued(record, self.build_token_pair(record, user))

    def _reject(self, reason: str, **context: Any) -> TokenRejectedError:
        self.logger.info("token_rejected", reason=reason, **context)
        return TokenRejectedError()

    def validate_token(
        self, token: str, *, expect_refresh_token: bool = False
    ) -> Tuple[User, TokenRecord]:
        try:
            payload = self.codec.verify(token)
        except InvalidTokenError as exc:
            raise self._reject("codec", detail=str(exc)) from exc

        if payload.get("refresh", False) is not expect_refresh_token:
            raise self._reject("token_kind", expect_refresh_token=expect_refresh_token)

        user_uuid = payload.get("sub")
        record_uuid = payload.get("token")
        version = payload.get("version")
        if (
            not isinstance(user_uuid, str)
            or not isinstance(record_uuid, str)
            or not isinstance(version, int)
            or isinstance(version, bool)
        ):
            raise self._reject("claims")

        record = self.store.get_token_record(user_uuid, record_uuid)
        if record is None:
            raise self._reject("record_missing", record_uuid=record_uuid)

        if record.version != version:
            if expect_refresh_token:
                self.store.delete_token_record(record.id)
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_uuid=user_uuid,
                    record_uuid=record_uuid,
                    presented_version=version,
                    current_version=record.version,
                )
            raise self._reject("version_mismatch", record_uuid=record_uuid)

        if record.is_expired(self._now()):
            raise self._reject("record_expired", record_uuid=record_uuid)

        user = self.store.get_user(record.user_id)
        if user is None or user.uuid != user_uuid:
            raise self._reject("user_missing", record_uuid=record_uuid)
        return user, record

    def rotate_token_pair(self, record: TokenRecord, user: User) -> IssuedTokens:
        expires_at = self._now() + timedelta(
            minutes=self.settings.refresh_token_ttl_minutes
        )
        updated = self.store.advance_token_version(record.id, record.version, expires_at)
        if updated is None:
            # Another request rotated first; the presented token is now stale
            self.store.delete_token_record(record.id)
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_uuid=user.uuid,
                record_uuid=record.uuid,
                presented_version=record.version,
                concurrent=True,
            )
            raise TokenRejectedError()
        self.logger.info(
            "token_pair_rotated",
            user_uuid=user.uuid,
            record_uuid=updated.uuid,
            version=updated.version,
        )
        return self._issued(updated, self.build_token_pair(updated, user))

    def logout_token(self, record: TokenRecord) -> None:
        deleted = self.store.delete_token_record(record.id)
        self.logger.info("token_record_deleted", record_uuid=record.uuid, deleted=deleted)

    def delete_all_for_user(self, user: User) -> int:
        count = self.store.delete_user_token_records(user.id)
        self.logger.info("user_token_records_deleted", user_uuid=user.uuid, count=count)
        return count

    def purge_expired(self) -> int:
        count = self.store.delete_expired_token_records(self._now())
        self.logger.info("expired_tokens_purged", count=count)
        return count

    def create_personal_token(
        self, user: User, *, name: str, expiration_minutes: Optional[int] = None
    ) -> IssuedTokens:
        """Create a named, access-only lineage.

        The token carries no ``exp`` claim; it stays valid until the record
        expires, is revoked, or the owner's credentials change.
        """
        label = (name or "").strip()
        if not label:
            raise ValidationError("token name is required", detail={"field": "name"})
        if expiration_minutes is not None and expiration_minutes <= 0:
            raise ValidationError(
                "expiration_minutes must be positive",
                detail={"field": "expiration_minutes"},
            )
        record = self.create_record(
            user, expiration_minutes=expiration_minutes, name=label
        )
        access_token = self.codec.sign(self._claims(record, user, refresh=False))
        return IssuedTokens(
            record=record, access_token=access_token, expires_at=record.expires_at
        )

    def list_tokens_for_user(self, user: User) -> List[TokenRecord]:
        return self.store.list_user_token_records(user.id)

    def revoke_token_for_user(self, user: User, record_uuid: str) -> bool:
        record = self.store.get_token_record(user.uuid, record_uuid)
        if record is None:
            return False
        self.logout_token(record)
        return True


__all__ = [
    "INVALID_TOKEN_MESSAGE",
    "IssuedTokens",
    "TokenPair",
    "TokenService",
    "TokenStore",
]
