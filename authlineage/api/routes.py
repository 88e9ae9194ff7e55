from __future__ import annotations

import asyncio
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Path, Response
from fastapi.responses import JSONResponse

from authlineage.api.guard import (
    ACCESS_TOKEN,
    PUBLIC,
    REFRESH_TOKEN,
    VERIFIED_ACCESS_TOKEN,
    AuthContext,
    require_auth,
)
from authlineage.api.schemas import (
    AdminToggleRequest,
    AuthResponse,
    EmailChangeRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PersonalTokenRequest,
    SignupRequest,
    TokenRecordListResponse,
    TokenRecordResponse,
    TokenResponse,
    UserResponse,
)
from authlineage.logging import get_logger
from authlineage.service.errors import NotFoundError, RateLimitedError
from authlineage.service.runtime import check_rate_limit, get_runtime
from authlineage.service.tokens import IssuedTokens
from authlineage.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_RATE_WINDOW_SECONDS = 60
RESET_RATE_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one unit from ``key``'s bucket or raise ``RateLimitedError``."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError("rate limit exceeded", retry_after_seconds=reset_seconds)
    return info


def _token_response(issued: IssuedTokens) -> TokenResponse:
    return TokenResponse(**issued.as_dict())


def _auth_response(user: User, issued: IssuedTokens) -> AuthResponse:
    return AuthResponse(**issued.as_dict(), user=UserResponse.from_user(user))


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@router.get("/healthz", response_model=Envelope, tags=["system"])
async def healthz(_: Optional[AuthContext] = Depends(require_auth(PUBLIC))):
    """Report store and Redis reachability; 503 when a dependency is down."""
    runtime = get_runtime()
    checks: Dict[str, str] = {}

    async def _probe(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _probe("store", runtime.store.verify_connection)
    checks["store"] = "healthy" if store_ok else "unhealthy"
    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = "healthy" if redis_ok else "unhealthy"
    else:
        checks["redis"] = "not_configured"

    healthy = store_ok and redis_ok
    envelope = Envelope(
        status="ok",
        data={"status": "healthy" if healthy else "unhealthy", "checks": checks},
    )
    if not healthy:
        return JSONResponse(status_code=503, content=envelope.model_dump())
    return envelope


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest, _: Optional[AuthContext] = Depends(require_auth(PUBLIC))
):
    """Create an account, mail a verification link and return the first token pair.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, issued = runtime.auth.signup(body.email, body.password, body.name)
    token = runtime.auth.request_email_verification(user)
    await asyncio.to_thread(runtime.email.send_email_verification, user.email, token)
    return Envelope(status="ok", data=_auth_response(user, issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    _: Optional[AuthContext] = Depends(require_auth(PUBLIC)),
):
    """Authenticate with email and password.

    Every successful login starts a new token lineage.

    Raises:
        401: If credentials are invalid
        429: If the per-email rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        LOGIN_RATE_WINDOW_SECONDS,
        response=response,
    )
    user, issued = runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(user, issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(ctx: AuthContext = Depends(require_auth(REFRESH_TOKEN))):
    """Exchange a refresh token for a new pair.

    The presented refresh token is spent; presenting it again revokes the
    whole lineage.
    """
    runtime = get_runtime()
    issued = runtime.tokens.rotate_token_pair(ctx.record, ctx.user)
    return Envelope(status="ok", data=_auth_response(ctx.user, issued))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN))):
    runtime = get_runtime()
    runtime.tokens.logout_token(ctx.record)
    return Response(status_code=204)


@router.get("/auth", response_model=Envelope, tags=["auth"])
async def current_user(ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN))):
    return Envelope(status="ok", data=UserResponse.from_user(ctx.user))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN)),
):
    """Change the password and sign out every device, this one included."""
    runtime = get_runtime()
    revoked = runtime.auth.change_password(
        ctx.user, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed", "revoked_tokens": revoked})


@router.patch("/users/me/email", response_model=Envelope, tags=["users"])
async def change_email(
    body: EmailChangeRequest,
    ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN)),
):
    runtime = get_runtime()
    user, revoked = runtime.auth.change_email(ctx.user, body.email)
    return Envelope(
        status="ok",
        data={"user": UserResponse.from_user(user), "revoked_tokens": revoked},
    )


@router.post("/auth/email/verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN)),
):
    """Mail a fresh verification link to the caller's current address.

    Raises:
        403: If the address is already verified
        429: If too many links were requested
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:request:{ctx.user.uuid}", limit=5, window_seconds=300
    )
    token = runtime.auth.request_email_verification(ctx.user)
    await asyncio.to_thread(runtime.email.send_email_verification, ctx.user.email, token)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: EmailVerificationRequest,
    ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN)),
):
    """Confirm the caller's address with the token from the verification mail.

    Raises:
        400: If the token is invalid, expired or names another address
    """
    runtime = get_runtime()
    # Bounds guessing of verification tokens
    await _enforce_rate_limit(
        runtime, f"verify:email:{ctx.user.uuid}", limit=10, window_seconds=300
    )
    user = runtime.auth.complete_email_verification(ctx.user, body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest,
    _: Optional[AuthContext] = Depends(require_auth(PUBLIC)),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        RESET_RATE_WINDOW_SECONDS,
    )
    result = runtime.auth.request_password_reset(body.email)
    if result is not None:
        user, token = result
        await asyncio.to_thread(runtime.email.send_password_reset, user.email, token)
    # Same answer whether or not the address is registered
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm,
    _: Optional[AuthContext] = Depends(require_auth(PUBLIC)),
):
    """Set a new password from a reset token and sign out every device.

    Raises:
        400: If the token is invalid, expired or already used
        429: If too many confirmations were attempted
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "reset:confirm", limit=5, window_seconds=300)
    revoked = runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset", "revoked_tokens": revoked})


@router.post("/admin/users/{user_uuid}/admin", response_model=Envelope, tags=["admin"])
async def set_user_admin(
    body: AdminToggleRequest,
    user_uuid: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_auth(VERIFIED_ACCESS_TOKEN)),
):
    """Grant or revoke the admin role; the target must sign in again."""
    runtime = get_runtime()
    user, revoked = runtime.auth.set_admin(ctx.user, user_uuid, body.is_admin)
    return Envelope(
        status="ok",
        data={"user": UserResponse.from_user(user), "revoked_tokens": revoked},
    )


@router.post("/auth/tokens", response_model=Envelope, status_code=201, tags=["tokens"])
async def create_personal_token(
    body: PersonalTokenRequest,
    ctx: AuthContext = Depends(require_auth(VERIFIED_ACCESS_TOKEN)),
):
    runtime = get_runtime()
    issued = runtime.tokens.create_personal_token(
        ctx.user, name=body.name, expiration_minutes=body.expiration_minutes
    )
    return Envelope(status="ok", data=_token_response(issued))


@router.get("/auth/tokens", response_model=Envelope, tags=["tokens"])
async def list_tokens(ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN))):
    runtime = get_runtime()
    records = runtime.tokens.list_tokens_for_user(ctx.user)
    return Envelope(
        status="ok",
        data=TokenRecordListResponse(
            items=[TokenRecordResponse.from_record(r) for r in records]
        ),
    )


@router.delete("/auth/tokens/{token_uuid}", status_code=204, tags=["tokens"])
async def revoke_token(
    token_uuid: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_auth(ACCESS_TOKEN)),
):
    runtime = get_runtime()
    if not runtime.tokens.revoke_token_for_user(ctx.user, token_uuid):
        raise NotFoundError("token not found", detail={"token_uuid": token_uuid})
    return Response(status_code=204)
