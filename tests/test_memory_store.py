from datetime import timedelta

import pytest

from issuetrack.service.lockout import LockoutPolicy
from issuetrack.storage.errors import ConstraintViolation
from issuetrack.storage.memory import MemoryStore
from issuetrack.storage.models import (
    AuditAction,
    AuditMetadata,
    IssuePriority,
    IssueType,
    RefreshTokenEntry,
    Role,
    utcnow,
)


def _entry(token: str, *, expires_in=timedelta(days=7)) -> RefreshTokenEntry:
    return RefreshTokenEntry(hashed_token=token, expires_at=utcnow() + expires_in)


def test_memory_store_persists_users_issues_and_audit(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", "Per", "Sist", role=Role.MANAGER)
    store.save_password(user.id, "hash", "argon2id")
    store.add_refresh_token(user.id, _entry("h1"))
    issue = store.create_issue(
        "Persisted issue",
        "Survives a reload of the store.",
        IssueType.TASK,
        user.id,
        priority=IssuePriority.HIGH,
        tags=["ops"],
    )
    store.append_audit(
        issue.id,
        user.id,
        AuditAction.CREATED,
        metadata=AuditMetadata(title=issue.title, type="TASK", priority="HIGH"),
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == Role.MANAGER
    assert [t.hashed_token for t in reloaded_user.refresh_tokens] == ["h1"]
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_issue(issue.id).tags == ["ops"]
    [entry] = reloaded.list_audit_for_issue(issue.id)
    assert entry.metadata.priority == "HIGH"


def test_corrupt_snapshot_starts_empty(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "memory_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.users == {}


def test_email_is_unique_case_insensitively(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", "A", "B")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("DUP@example.com", "C", "D")
    assert exc_info.value.field == "email"
    assert store.get_user_by_email(" Dup@Example.com ") is not None


def test_returned_users_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("copy@example.com", "A", "B")

    fetched = store.get_user(user.id)
    fetched.refresh_tokens.append(_entry("rogue"))

    assert store.get_user(user.id).refresh_tokens == []


def test_rotation_is_single_use(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("rotate@example.com", "A", "B")
    store.add_refresh_token(user.id, _entry("old"))

    owner = store.rotate_refresh_token("old", _entry("new"))

    assert owner.id == user.id
    assert [t.hashed_token for t in owner.refresh_tokens] == ["new"]
    assert store.rotate_refresh_token("old", _entry("newer")) is None


def test_rotation_of_expired_token_fails_and_prunes(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("expired@example.com", "A", "B")
    store.users[user.id].refresh_tokens.append(_entry("stale", expires_in=timedelta(seconds=-1)))

    assert store.rotate_refresh_token("stale", _entry("new")) is None
    assert store.get_user(user.id).refresh_tokens == []


def test_failed_logins_lock_then_reset(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("lock@example.com", "A", "B")
    policy = LockoutPolicy(max_attempts=2, lock_duration=timedelta(minutes=1))
    now = utcnow()

    first = store.register_failed_login(user.id, now=now, policy=policy)
    second = store.register_failed_login(user.id, now=now, policy=policy)

    assert (first.login_attempts, first.lock_until) == (1, None)
    assert second.lock_until == now + timedelta(minutes=1)

    store.reset_login_attempts(user.id)
    reset = store.get_user(user.id)
    assert (reset.login_attempts, reset.lock_until) == (0, None)


def test_unknown_issue_fields_are_refused(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("fields@example.com", "A", "B")
    issue = store.create_issue("Some title", "Some description", IssueType.BUG, user.id)

    with pytest.raises(ValueError, match="unknown issue field"):
        store.update_issue(issue.id, {"severity": "high"})


def test_issue_requires_known_reporter(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_issue("Orphan issue", "No reporter exists", IssueType.BUG, "ghost")
