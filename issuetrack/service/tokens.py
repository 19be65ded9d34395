from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from issuetrack.config import Settings
from issuetrack.logging import get_logger
from issuetrack.storage.models import Role, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried by an access token."""

    user_id: str
    email: str
    role: Role
    iat: Optional[int] = None
    exp: Optional[int] = None

    def identity(self) -> tuple[str, str, Role]:
        return self.user_id, self.email, self.role


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """HS256 access tokens plus opaque, hash-at-rest refresh tokens.

    Access tokens are stateless and verified purely from the signature and
    ``exp``. Refresh tokens are random values; only
    :meth:`hash_refresh_token` output is ever persisted.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret or not settings.refresh_token_secret:
            raise RuntimeError("JWT_SECRET and REFRESH_TOKEN_SECRET must be configured")
        self.settings = settings
        self._access_key = settings.jwt_secret.encode()
        self._refresh_key = settings.refresh_token_secret.encode()
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._access_key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_access_token(
        self, payload: TokenPayload, *, now: Optional[float] = None
    ) -> str:
        issued_at = int(now if now is not None else time.time())
        claims = {
            "iss": self.settings.jwt_issuer,
            "userId": payload.user_id,
            "email": payload.email,
            "role": Role(payload.role).value,
            "iat": issued_at,
            "exp": issued_at + int(self.access_ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, *, check_expiry: bool) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        # Reject anything but HS256 (including "none") before touching the signature.
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected_sig, sig_b64.encode()):
            return None
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict) or claims.get("iss") != self.settings.jwt_issuer:
            return None
        try:
            exp_ts = float(claims.get("exp"))
        except (TypeError, ValueError):
            return None
        if check_expiry and exp_ts <= time.time():
            return None
        return claims

    def verify_access_token(self, token: str) -> Optional[TokenPayload]:
        """Return the payload for a valid, unexpired token; ``None`` otherwise."""
        claims = self._decode(token, check_expiry=True)
        if not claims:
            return None
        try:
            return TokenPayload(
                user_id=str(claims["userId"]),
                email=str(claims["email"]),
                role=Role(claims["role"]),
                iat=int(claims["iat"]),
                exp=int(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def is_expiring_soon(self, token: str, threshold_seconds: int = 120) -> bool:
        claims = self._decode(token, check_expiry=False)
        if not claims:
            return True
        return float(claims["exp"]) - time.time() < threshold_seconds

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_hex(32)

    def hash_refresh_token(self, token: str) -> str:
        return hmac.new(self._refresh_key, token.encode(), hashlib.sha256).hexdigest()

    def refresh_token_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.refresh_ttl

    def issue_token_pair(self, payload: TokenPayload) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(payload),
            refresh_token=self.issue_refresh_token(),
        )
