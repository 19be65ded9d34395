from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from issuetrack.logging import get_logger
from issuetrack.storage.models import User, utcnow

if TYPE_CHECKING:
    from issuetrack.storage.memory import MemoryStore
    from issuetrack.storage.postgres import PostgresStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )


def is_locked(lock_until: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True iff a lock is set and still in the future."""
    if lock_until is None:
        return False
    return lock_until > (now or utcnow())


def minutes_remaining(lock_until: datetime, now: Optional[datetime] = None) -> int:
    remaining = (lock_until - (now or utcnow())).total_seconds()
    return max(1, math.ceil(remaining / 60))


def next_failure_state(
    attempts: int,
    lock_until: Optional[datetime],
    now: datetime,
    policy: LockoutPolicy,
) -> tuple[int, Optional[datetime]]:
    """Return ``(attempts, lock_until)`` after one more failed password.

    An expired lock restarts the count at 1 (the failing attempt itself).
    Reaching ``max_attempts`` while unlocked sets a fresh lock; an active lock
    is never extended.
    """
    if lock_until is not None and lock_until <= now:
        return 1, None
    new_attempts = attempts + 1
    if new_attempts >= policy.max_attempts and not is_locked(lock_until, now):
        return new_attempts, now + policy.lock_duration
    return new_attempts, lock_until


class AccountSecurity:
    """Failed-login bookkeeping backed by the store's atomic updates."""

    def __init__(
        self, store: "MemoryStore | PostgresStore", policy: LockoutPolicy
    ) -> None:
        self.store = store
        self.policy = policy

    def check(self, user: User, now: Optional[datetime] = None) -> Optional[int]:
        """Minutes remaining when ``user`` is locked, else ``None``."""
        now = now or utcnow()
        if is_locked(user.lock_until, now):
            return minutes_remaining(user.lock_until, now)  # type: ignore[arg-type]
        return None

    def record_failure(self, user: User, now: Optional[datetime] = None) -> Optional[User]:
        now = now or utcnow()
        updated = self.store.register_failed_login(user.id, now=now, policy=self.policy)
        if updated and is_locked(updated.lock_until, now):
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat() if updated.lock_until else None,
            )
        elif updated:
            logger.info(
                "login_attempt_failed", user_id=user.id, attempts=updated.login_attempts
            )
        return updated

    def record_success(self, user: User) -> None:
        if user.login_attempts or user.lock_until:
            self.store.reset_login_attempts(user.id)
