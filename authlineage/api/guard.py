"""Per-route bearer authentication.

Routes declare what they need with a ``RouteAuth`` value and depend on
``require_auth(route_auth)``::

    @router.post("/auth/refresh")
    async def refresh(ctx: AuthContext = Depends(require_auth(REFRESH_TOKEN))):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from fastapi import Header, Request

from authlineage.logging import get_logger
from authlineage.service.errors import AuthenticationError, EmailUnverifiedError
from authlineage.service.runtime import get_runtime
from authlineage.service.tokens import TokenService
from authlineage.storage.models import TokenRecord, User

logger = get_logger(__name__)

BEARER_SCHEME = "Bearer"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class RouteAuth:
    public: bool = False
    token_type: TokenType = TokenType.ACCESS
    require_verified_email: bool = False

    @property
    def expect_refresh_token(self) -> bool:
        return self.token_type is TokenType.REFRESH


PUBLIC = RouteAuth(public=True)
ACCESS_TOKEN = RouteAuth()
VERIFIED_ACCESS_TOKEN = RouteAuth(require_verified_email=True)
REFRESH_TOKEN = RouteAuth(token_type=TokenType.REFRESH)


@dataclass
class AuthContext:
    user: User
    record: TokenRecord


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from ``Authorization: Bearer <token>``.

    The scheme is matched exactly; anything else counts as no token.
    """
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme != BEARER_SCHEME:
        return None
    token = value.strip()
    return token or None


def authorize(
    tokens: TokenService, route_auth: RouteAuth, authorization: Optional[str]
) -> Optional[AuthContext]:
    token = extract_bearer(authorization)
    if token is None:
        if route_auth.public:
            return None
        raise AuthenticationError("missing bearer token")

    user, record = tokens.validate_token(
        token, expect_refresh_token=route_auth.expect_refresh_token
    )
    if route_auth.require_verified_email and not user.is_email_verified:
        logger.info("email_unverified_rejected", user_uuid=user.uuid)
        raise EmailUnverifiedError()
    return AuthContext(user=user, record=record)


def require_auth(route_auth: RouteAuth) -> Callable:
    """Build a FastAPI dependency enforcing ``route_auth``.

    The resolved context (``None`` on anonymous public access) is returned
    and stored on ``request.state.auth``.
    """

    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[AuthContext]:
        runtime = get_runtime()
        ctx = authorize(runtime.tokens, route_auth, authorization)
        request.state.auth = ctx
        return ctx

    return _dependency
