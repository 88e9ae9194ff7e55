from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authlineage.config import MIN_JWT_SECRET_LENGTH, Settings
from authlineage.logging import get_logger
from authlineage.storage.models import utcnow

logger = get_logger(__name__)


class InvalidTokenError(Exception):
    """Raised for every token the codec refuses to accept."""


class TokenCodec:
    """Compact HS256 JWT signer and verifier.

    Access and refresh tokens share one key; the caller decides what the
    claims mean. ``exp`` is only written when an expiration is requested, so
    tokens without it live exactly as long as their backing record.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"signing secret must be at least {MIN_JWT_SECRET_LENGTH} characters long"
            )
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(
            self._key, signing_input.encode("utf-8", "surrogatepass"), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def sign(
        self, claims: dict[str, Any], *, expires_in_minutes: Optional[int] = None
    ) -> str:
        now = self.clock()
        payload = dict(claims)
        payload["iat"] = int(now.timestamp())
        payload["iss"] = self.issuer
        payload["aud"] = self.audience
        if expires_in_minutes is not None:
            payload["exp"] = int((now + timedelta(minutes=expires_in_minutes)).timestamp())
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise InvalidTokenError("malformed token") from exc

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("undecodable header") from exc
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("unsupported algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidTokenError("bad signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("payload is not an object")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("wrong audience")

        if "exp" in payload:
            try:
                exp_ts = float(payload["exp"])
            except (TypeError, ValueError) as exc:
                raise InvalidTokenError("malformed exp claim") from exc
            if exp_ts <= self.clock().timestamp():
                raise InvalidTokenError("token expired")
        return payload


__all__ = ["InvalidTokenError", "TokenCodec"]
