from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from issuetrack.logging import get_logger
from issuetrack.service.lockout import LockoutPolicy, next_failure_state
from issuetrack.storage.errors import ConstraintViolation
from issuetrack.storage.models import (
    AuditAction,
    AuditLogEntry,
    AuditMetadata,
    Comment,
    Issue,
    IssueFilters,
    IssuePriority,
    IssueStatus,
    IssueType,
    RefreshTokenEntry,
    Role,
    User,
    utcnow,
)

# Rank order used when sorting by enum columns
_PRIORITY_RANK = {p: i for i, p in enumerate(IssuePriority)}
_STATUS_RANK = {s: i for i, s in enumerate(IssueStatus)}

_ISSUE_SORT_KEYS = {
    "created_at": lambda issue: issue.created_at,
    "updated_at": lambda issue: issue.updated_at,
    "priority": lambda issue: _PRIORITY_RANK[issue.priority],
    "status": lambda issue: _STATUS_RANK[issue.status],
    "title": lambda issue: issue.title.lower(),
}


class MemoryStore:
    """In-process store with a JSON snapshot under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/issuetrack") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.issues: Dict[str, Issue] = {}
        self.comments: Dict[str, Comment] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def reset(self) -> None:
        """Drop every record; used between tests."""
        with self._data_lock:
            self.users.clear()
            self.credentials.clear()
            self.issues.clear()
            self.comments.clear()
            self.audit_log.clear()
            self._persist_state()

    # user / auth
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                is_active=is_active,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user, refresh_tokens=list(user.refresh_tokens))

    def _copy_user(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(user, refresh_tokens=list(user.refresh_tokens))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return self._copy_user(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", detail={"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def register_failed_login(
        self, user_id: str, *, now: datetime, policy: LockoutPolicy
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts, user.lock_until = next_failure_state(
                user.login_attempts, user.lock_until, now, policy
            )
            user.updated_at = now
            self._persist_state()
            return self._copy_user(user)

    def reset_login_attempts(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.login_attempts = 0
            user.lock_until = None
            self._persist_state()

    # refresh tokens
    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for refresh token", detail={"user_id": user_id}
                )
            user.refresh_tokens = [t for t in user.refresh_tokens if not t.is_expired(now)]
            user.refresh_tokens.append(entry)
            self._persist_state()

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_entry: RefreshTokenEntry,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Swap ``old_hash`` for ``new_entry`` on its owner, atomically.

        Returns ``None`` when no live entry carries ``old_hash``; of several
        concurrent callers presenting the same token only one sees the owner.
        """
        now = now or utcnow()
        with self._data_lock:
            for user in self.users.values():
                match = next(
                    (t for t in user.refresh_tokens if t.hashed_token == old_hash), None
                )
                if match is None:
                    continue
                user.refresh_tokens = [
                    t
                    for t in user.refresh_tokens
                    if t is not match and not t.is_expired(now)
                ]
                if match.is_expired(now):
                    self._persist_state()
                    return None
                user.refresh_tokens.append(new_entry)
                self._persist_state()
                return self._copy_user(user)
            return None

    def revoke_refresh_token(self, hashed_token: str) -> bool:
        with self._data_lock:
            for user in self.users.values():
                remaining = [t for t in user.refresh_tokens if t.hashed_token != hashed_token]
                if len(remaining) != len(user.refresh_tokens):
                    user.refresh_tokens = remaining
                    self._persist_state()
                    return True
            return False

    # issues
    def create_issue(
        self,
        title: str,
        description: str,
        issue_type: IssueType,
        reported_by: str,
        *,
        priority: IssuePriority = IssuePriority.MEDIUM,
        tags: Optional[Sequence[str]] = None,
        assigned_to: Optional[str] = None,
    ) -> Issue:
        with self._data_lock:
            if reported_by not in self.users:
                raise ConstraintViolation("reporter not found", field="reported_by")
            if assigned_to and assigned_to not in self.users:
                raise ConstraintViolation("assignee not found", field="assigned_to")
            issue = Issue(
                id=str(uuid.uuid4()),
                title=title,
                description=description,
                type=IssueType(issue_type),
                reported_by=reported_by,
                priority=IssuePriority(priority),
                tags=list(tags or []),
                assigned_to=assigned_to,
            )
            self.issues[issue.id] = issue
            self._persist_state()
            return replace(issue, tags=list(issue.tags))

    def get_issue(self, issue_id: str, *, include_deleted: bool = False) -> Optional[Issue]:
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if not issue or (issue.is_deleted and not include_deleted):
                return None
            return replace(issue, tags=list(issue.tags))

    def update_issue(self, issue_id: str, changes: Dict[str, Any]) -> Optional[Issue]:
        """Apply attribute ``changes`` to a live issue and bump ``updated_at``."""
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if not issue or issue.is_deleted:
                return None
            assignee = changes.get("assigned_to")
            if assignee and assignee not in self.users:
                raise ConstraintViolation("assignee not found", field="assigned_to")
            for key, value in changes.items():
                if not hasattr(issue, key):
                    raise ValueError(f"unknown issue field: {key}")
                setattr(issue, key, list(value) if key == "tags" else value)
            issue.updated_at = changes.get("updated_at") or utcnow()
            self._persist_state()
            return replace(issue, tags=list(issue.tags))

    def soft_delete_issue(
        self, issue_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Issue]:
        now = now or utcnow()
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if not issue or issue.is_deleted:
                return None
            issue.deleted_at = now
            issue.updated_at = now
            self._persist_state()
            return replace(issue, tags=list(issue.tags))

    def _matches(self, issue: Issue, filters: IssueFilters) -> bool:
        if issue.is_deleted:
            return False
        if filters.status and issue.status not in filters.status:
            return False
        if filters.priority and issue.priority not in filters.priority:
            return False
        if filters.type and issue.type not in filters.type:
            return False
        if filters.assigned_to and issue.assigned_to != filters.assigned_to:
            return False
        if filters.reported_by and issue.reported_by != filters.reported_by:
            return False
        if filters.tags and not set(filters.tags) & set(issue.tags):
            return False
        if filters.search:
            needle = filters.search.lower()
            if needle not in issue.title.lower() and needle not in issue.description.lower():
                return False
        return True

    def list_issues(self, filters: IssueFilters) -> tuple[List[Issue], int]:
        """Return one page of matching issues and the total match count."""
        sort_key = _ISSUE_SORT_KEYS.get(filters.sort_by, _ISSUE_SORT_KEYS["created_at"])
        with self._data_lock:
            matched = [i for i in self.issues.values() if self._matches(i, filters)]
            matched.sort(key=sort_key, reverse=filters.sort_order != "asc")
            start = (filters.page - 1) * filters.limit
            page = matched[start : start + filters.limit]
            return [replace(i, tags=list(i.tags)) for i in page], len(matched)

    def list_active_issues(self) -> List[Issue]:
        with self._data_lock:
            return [
                replace(i, tags=list(i.tags))
                for i in self.issues.values()
                if not i.is_deleted
            ]

    # comments
    def create_comment(self, issue_id: str, author_id: str, text: str) -> Comment:
        with self._data_lock:
            if issue_id not in self.issues:
                raise ConstraintViolation("issue not found", field="issue_id")
            comment = Comment(
                id=str(uuid.uuid4()), issue_id=issue_id, author_id=author_id, text=text
            )
            self.comments[comment.id] = comment
            self._persist_state()
            return replace(comment)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment or comment.deleted_at is not None:
                return None
            return replace(comment)

    def update_comment(
        self, comment_id: str, text: str, *, now: Optional[datetime] = None
    ) -> Optional[Comment]:
        now = now or utcnow()
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment or comment.deleted_at is not None:
                return None
            comment.text = text
            comment.is_edited = True
            comment.edited_at = now
            comment.updated_at = now
            self._persist_state()
            return replace(comment)

    def soft_delete_comment(
        self, comment_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Comment]:
        now = now or utcnow()
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment or comment.deleted_at is not None:
                return None
            comment.deleted_at = now
            comment.updated_at = now
            self._persist_state()
            return replace(comment)

    def list_comments(self, issue_id: str) -> List[Comment]:
        with self._data_lock:
            results = [
                c
                for c in self.comments.values()
                if c.issue_id == issue_id and c.deleted_at is None
            ]
            results.sort(key=lambda c: c.created_at, reverse=True)
            return [replace(c) for c in results]

    # audit
    def append_audit(
        self,
        issue_id: str,
        user_id: str,
        action: AuditAction,
        *,
        field: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            issue_id=issue_id,
            user_id=user_id,
            action=AuditAction(action),
            field=field,
            old_value=old_value,
            new_value=new_value,
            metadata=metadata,
        )
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()
        return entry

    def list_audit_for_issue(self, issue_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._data_lock:
            # append order breaks ties between entries written in the same instant
            entries = [
                (idx, e) for idx, e in enumerate(self.audit_log) if e.issue_id == issue_id
            ]
        entries.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [e for _, e in entries[:limit]]

    def list_recent_audit(self, limit: int = 10) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = list(enumerate(self.audit_log))
        entries.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [e for _, e in entries[:limit]]

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role.value,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "refresh_tokens": [
                {
                    "hashed_token": t.hashed_token,
                    "expires_at": self._serialize_datetime(t.expires_at),
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in user.refresh_tokens
            ],
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=Role(data.get("role", Role.USER.value)),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            login_attempts=data.get("login_attempts", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            refresh_tokens=[
                RefreshTokenEntry(
                    hashed_token=t["hashed_token"],
                    expires_at=self._deserialize_datetime(t["expires_at"]),
                    created_at=self._deserialize_datetime(t.get("created_at")) or utcnow(),
                )
                for t in data.get("refresh_tokens", [])
            ],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_issue(self, issue: Issue) -> dict:
        return {
            "id": issue.id,
            "title": issue.title,
            "description": issue.description,
            "type": issue.type.value,
            "reported_by": issue.reported_by,
            "status": issue.status.value,
            "priority": issue.priority.value,
            "tags": list(issue.tags),
            "assigned_to": issue.assigned_to,
            "resolved_at": self._serialize_datetime(issue.resolved_at),
            "closed_at": self._serialize_datetime(issue.closed_at),
            "deleted_at": self._serialize_datetime(issue.deleted_at),
            "created_at": self._serialize_datetime(issue.created_at),
            "updated_at": self._serialize_datetime(issue.updated_at),
        }

    def _deserialize_issue(self, data: dict) -> Issue:
        return Issue(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            type=IssueType(data["type"]),
            reported_by=data["reported_by"],
            status=IssueStatus(data.get("status", IssueStatus.OPEN.value)),
            priority=IssuePriority(data.get("priority", IssuePriority.MEDIUM.value)),
            tags=list(data.get("tags", [])),
            assigned_to=data.get("assigned_to"),
            resolved_at=self._deserialize_datetime(data.get("resolved_at")),
            closed_at=self._deserialize_datetime(data.get("closed_at")),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_comment(self, comment: Comment) -> dict:
        return {
            "id": comment.id,
            "issue_id": comment.issue_id,
            "author_id": comment.author_id,
            "text": comment.text,
            "is_edited": comment.is_edited,
            "edited_at": self._serialize_datetime(comment.edited_at),
            "deleted_at": self._serialize_datetime(comment.deleted_at),
            "created_at": self._serialize_datetime(comment.created_at),
            "updated_at": self._serialize_datetime(comment.updated_at),
        }

    def _deserialize_comment(self, data: dict) -> Comment:
        return Comment(
            id=data["id"],
            issue_id=data["issue_id"],
            author_id=data["author_id"],
            text=data["text"],
            is_edited=data.get("is_edited", False),
            edited_at=self._deserialize_datetime(data.get("edited_at")),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_audit(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "issue_id": entry.issue_id,
            "user_id": entry.user_id,
            "action": entry.action.value,
            "field": entry.field,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "metadata": entry.metadata.to_dict() if entry.metadata else None,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            issue_id=data["issue_id"],
            user_id=data["user_id"],
            action=AuditAction(data["action"]),
            field=data.get("field"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            metadata=AuditMetadata.from_dict(data.get("metadata")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "issues": [self._serialize_issue(i) for i in self.issues.values()],
            "comments": [self._serialize_comment(c) for c in self.comments.values()],
            "audit_log": [self._serialize_audit(e) for e in self.audit_log],
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
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.issues = {i["id"]: self._deserialize_issue(i) for i in data.get("issues", [])}
        self.comments = {
            c["id"]: self._deserialize_comment(c) for c in data.get("comments", [])
        }
        self.audit_log = [self._deserialize_audit(e) for e in data.get("audit_log", [])]
        return True
