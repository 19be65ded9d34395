from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from issuetrack.config import Settings
from issuetrack.logging import get_logger
from issuetrack.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from issuetrack.service.lockout import AccountSecurity, LockoutPolicy
from issuetrack.service.tokens import TokenPair, TokenPayload, TokenService
from issuetrack.storage.errors import ConstraintViolation
from issuetrack.storage.models import RefreshTokenEntry, Role, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_TOKEN = "Invalid or expired token"

PASSWORD_SPECIALS = '!@#$%^&*(),.?":{}|<>'
_PASSWORD_RULES: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (
        re.compile("[" + re.escape(PASSWORD_SPECIALS) + "]"),
        "Password must contain at least one special character",
    ),
]


def password_strength_errors(password: str) -> List[str]:
    errors: List[str] = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(password):
            errors.append(message)
    return errors


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def register_failed_login(
        self, user_id: str, *, now: datetime, policy: LockoutPolicy
    ) -> Optional[User]: ...

    def reset_login_attempts(self, user_id: str) -> None: ...

    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, now: Optional[datetime] = None
    ) -> None: ...

    def rotate_refresh_token(
        self, old_hash: str, new_entry: RefreshTokenEntry, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def revoke_refresh_token(self, hashed_token: str) -> bool: ...


@dataclass
class AuthContext:
    """Authenticated identity for the lifetime of one request."""

    user_id: str
    email: str
    role: Role


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Credential checks, lockout bookkeeping and token issuance."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        security: Optional[AccountSecurity] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.security = security or AccountSecurity(store, LockoutPolicy.from_settings(settings))  # type: ignore[arg-type]
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _issue_session_tokens(self, user: User) -> TokenPair:
        pair = self.tokens.issue_token_pair(TokenPayload(user.id, user.email, user.role))
        now = utcnow()
        self.store.add_refresh_token(
            user.id,
            RefreshTokenEntry(
                hashed_token=self.tokens.hash_refresh_token(pair.refresh_token),
                expires_at=self.tokens.refresh_token_expiry(now),
                created_at=now,
            ),
            now=now,
        )
        return pair

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> AuthResult:
        email = email.strip().lower()
        problems = password_strength_errors(password)
        if problems:
            raise ValidationError(problems[0], details={"password": problems})
        if self.store.get_user_by_email(email):
            raise ConflictError("An account with this email already exists")
        try:
            user = self.store.create_user(
                email, first_name.strip(), last_name.strip(), role=Role.USER
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("An account with this email already exists") from exc
            raise
        self.save_password(user.id, password)
        pair = self._issue_session_tokens(user)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    def login(self, email: str, password: str) -> AuthResult:
        """Check credentials in a fixed order: existence, lock, active, password."""
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            self.logger.info("login_unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = utcnow()
        minutes = self.security.check(user, now)
        if minutes is not None:
            self.logger.warning("login_blocked_locked", user_id=user.id, minutes=minutes)
            raise AccountLockedError(minutes)

        if not user.is_active:
            self.logger.warning("login_inactive_account", user_id=user.id)
            raise AuthenticationError("Account is deactivated")

        if not self.verify_password(user.id, password):
            self.security.record_failure(user, now)
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.security.record_success(user)
        pair = self._issue_session_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Rotate ``refresh_token``; the presented value is dead afterwards."""
        if not refresh_token:
            raise AuthenticationError("Refresh token not found")
        now = utcnow()
        new_refresh = self.tokens.issue_refresh_token()
        user = self.store.rotate_refresh_token(
            self.tokens.hash_refresh_token(refresh_token),
            RefreshTokenEntry(
                hashed_token=self.tokens.hash_refresh_token(new_refresh),
                expires_at=self.tokens.refresh_token_expiry(now),
                created_at=now,
            ),
            now=now,
        )
        if not user:
            self.logger.warning("refresh_token_rejected")
            raise AuthenticationError("Invalid or expired refresh token")
        if not user.is_active:
            self.store.revoke_refresh_token(self.tokens.hash_refresh_token(new_refresh))
            raise AuthenticationError("Account is deactivated")
        access = self.tokens.issue_access_token(TokenPayload(user.id, user.email, user.role))
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return AuthResult(user=user, tokens=TokenPair(access, new_refresh))

    def logout(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        revoked = self.store.revoke_refresh_token(self.tokens.hash_refresh_token(refresh_token))
        self.logger.info("logout", revoked=revoked)
        return revoked

    def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve a bearer token into an identity or raise a uniform 401."""
        if not access_token:
            raise AuthenticationError(INVALID_TOKEN)
        payload = self.tokens.verify_access_token(access_token)
        if payload is None:
            raise AuthenticationError(INVALID_TOKEN)
        return AuthContext(user_id=payload.user_id, email=payload.email, role=payload.role)
