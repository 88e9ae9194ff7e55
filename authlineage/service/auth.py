from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authlineage.config import Settings
from authlineage.logging import get_logger
from authlineage.service.codec import InvalidTokenError
from authlineage.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from authlineage.service.tokens import IssuedTokens, TokenService
from authlineage.storage.errors import ConstraintViolation
from authlineage.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS_MESSAGE = "invalid email or password"
INVALID_EMAIL_TOKEN_MESSAGE = "invalid or expired token"
EMAIL_VERIFICATION_PURPOSE = "email_verification"
PASSWORD_RESET_PURPOSE = "password_reset"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _updated_marker(user: User) -> int:
    """``user.updated_at`` as integer microseconds since the epoch."""
    return (user.updated_at - _EPOCH) // timedelta(microseconds=1)


class UserStore(Protocol):
    def create_user(self, email: str, name: str, *, is_admin: bool = False) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_uuid(self, user_uuid: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_email(self, user_id: int, email: str) -> Optional[User]: ...

    def set_user_admin(self, user_id: int, is_admin: bool) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int) -> Optional[User]: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


class AuthService:
    """Principal and credential flows that sit on top of the token service.

    Anything that changes what a user can prove about themselves (password,
    email address, admin role) drops every token lineage they hold.
    """

    def __init__(self, store: UserStore, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: int, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_user(
        self, email: str, password: str, name: str = "", *, is_admin: bool = False
    ) -> User:
        try:
            user = self.store.create_user(email, name, is_admin=is_admin)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_created", user_uuid=user.uuid, is_admin=is_admin)
        return user

    def signup(self, email: str, password: str, name: str = "") -> Tuple[User, IssuedTokens]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        user = self.create_user(email, password, name)
        return user, self.tokens.create_and_issue_pair(user)

    def login(self, email: str, password: str) -> Tuple[User, IssuedTokens]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        issued = self.tokens.create_and_issue_pair(user)
        self.logger.info("user_logged_in", user_uuid=user.uuid, record_uuid=issued.record.uuid)
        return user, issued

    def change_password(self, user: User, current_password: str, new_password: str) -> int:
        if not self.verify_password(user.id, current_password):
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        self.save_password(user.id, new_password)
        revoked = self.tokens.delete_all_for_user(user)
        self.logger.info("password_changed", user_uuid=user.uuid, revoked=revoked)
        return revoked

    def change_email(self, user: User, email: str) -> Tuple[User, int]:
        try:
            updated = self.store.update_user_email(user.id, email)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("user not found")
        revoked = self.tokens.delete_all_for_user(updated)
        self.logger.info("email_changed", user_uuid=updated.uuid, revoked=revoked)
        return updated, revoked

    def _sign_email_token(self, claims: dict[str, Any], purpose: str) -> str:
        return self.tokens.codec.sign(
            {**claims, "purpose": purpose},
            expires_in_minutes=self.settings.email_token_ttl_minutes,
        )

    def _read_email_token(self, token: str, purpose: str) -> dict[str, Any]:
        try:
            payload = self.tokens.codec.verify(token)
        except InvalidTokenError as exc:
            self.logger.info("email_token_rejected", purpose=purpose, reason=str(exc))
            raise ValidationError(INVALID_EMAIL_TOKEN_MESSAGE) from exc
        if payload.get("purpose") != purpose:
            self.logger.info("email_token_rejected", purpose=purpose, reason="purpose")
            raise ValidationError(INVALID_EMAIL_TOKEN_MESSAGE)
        return payload

    def request_email_verification(self, user: User) -> str:
        """Return a short-lived token proving control of ``user.email``."""
        if user.is_email_verified:
            raise ForbiddenError("email already verified")
        token = self._sign_email_token(
            {"sub": user.uuid, "email": user.email}, EMAIL_VERIFICATION_PURPOSE
        )
        self.logger.info("email_verification_requested", user_uuid=user.uuid)
        return token

    def complete_email_verification(self, user: User, token: str) -> User:
        """Mark ``user`` verified if ``token`` was issued for their current address.

        A token issued before an email change names the old address and is
        refused.
        """
        if user.is_email_verified:
            return user
        payload = self._read_email_token(token, EMAIL_VERIFICATION_PURPOSE)
        if payload.get("sub") != user.uuid or payload.get("email") != user.email:
            self.logger.warning("email_verification_mismatch", user_uuid=user.uuid)
            raise ValidationError(INVALID_EMAIL_TOKEN_MESSAGE)
        updated = self.store.mark_email_verified(user.id)
        if updated is None:
            raise NotFoundError("user not found")
        self.logger.info("email_verified", user_uuid=updated.uuid)
        return updated

    def request_password_reset(self, email: str) -> Optional[Tuple[User, str]]:
        """Return the user and a reset token, or ``None`` for an unknown email.

        The token is bound to the user's ``updated_at`` so it dies with the
        next password, email or role change.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return None
        token = self._sign_email_token(
            {"email": user.email, "updated_at": _updated_marker(user)},
            PASSWORD_RESET_PURPOSE,
        )
        self.logger.info("password_reset_requested", user_uuid=user.uuid)
        return user, token

    def complete_password_reset(self, token: str, new_password: str) -> int:
        """Set a new password from a reset token and drop every lineage."""
        payload = self._read_email_token(token, PASSWORD_RESET_PURPOSE)
        email = payload.get("email")
        marker = payload.get("updated_at")
        if not isinstance(email, str) or not isinstance(marker, int) or isinstance(marker, bool):
            raise ValidationError(INVALID_EMAIL_TOKEN_MESSAGE)
        user = self.store.get_user_by_email(email)
        if user is None or _updated_marker(user) != marker:
            self.logger.warning("password_reset_stale_token")
            raise ValidationError(INVALID_EMAIL_TOKEN_MESSAGE)
        self.save_password(user.id, new_password)
        revoked = self.tokens.delete_all_for_user(user)
        self.logger.info("password_reset_completed", user_uuid=user.uuid, revoked=revoked)
        return revoked

    def set_admin(self, actor: User, target_uuid: str, is_admin: bool) -> Tuple[User, int]:
        if not actor.is_admin:
            raise ForbiddenError("admin role required")
        target = self.store.get_user_by_uuid(target_uuid)
        if target is None:
            raise NotFoundError("user not found", detail={"user_uuid": target_uuid})
        updated = self.store.set_user_admin(target.id, is_admin)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_uuid": target_uuid})
        revoked = self.tokens.delete_all_for_user(updated)
        self.logger.info(
            "admin_role_changed",
            actor_uuid=actor.uuid,
            user_uuid=updated.uuid,
            is_admin=is_admin,
            revoked=revoked,
        )
        return updated, revoked
