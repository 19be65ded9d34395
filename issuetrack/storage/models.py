from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class IssuePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IssueType(str, Enum):
    BUG = "BUG"
    FEATURE = "FEATURE"
    TASK = "TASK"
    INCIDENT = "INCIDENT"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    ASSIGNED = "ASSIGNED"
    UNASSIGNED = "UNASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"
    PRIORITY_CHANGED = "PRIORITY_CHANGED"
    COMMENTED = "COMMENTED"
    COMMENT_EDITED = "COMMENT_EDITED"
    COMMENT_DELETED = "COMMENT_DELETED"


# Allowed workflow moves; anything not listed is rejected.
STATUS_TRANSITIONS: Dict[IssueStatus, tuple[IssueStatus, ...]] = {
    IssueStatus.OPEN: (IssueStatus.IN_PROGRESS, IssueStatus.CLOSED),
    IssueStatus.IN_PROGRESS: (
        IssueStatus.OPEN,
        IssueStatus.RESOLVED,
        IssueStatus.CLOSED,
    ),
    IssueStatus.RESOLVED: (IssueStatus.CLOSED, IssueStatus.OPEN),
    IssueStatus.CLOSED: (IssueStatus.OPEN,),
}


@dataclass
class RefreshTokenEntry:
    """Stored form of a refresh token: only the keyed hash is kept."""

    hashed_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.USER
    is_active: bool = True
    is_verified: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class Issue:
    id: str
    title: str
    description: str
    type: IssueType
    reported_by: str
    status: IssueStatus = IssueStatus.OPEN
    priority: IssuePriority = IssuePriority.MEDIUM
    tags: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Comment:
    id: str
    issue_id: str
    author_id: str
    text: str
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditMetadata:
    """Closed set of context attached to an audit entry."""

    title: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    comment_id: Optional[str] = None
    preview: Optional[str] = None
    deleted_by: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        raw = {
            "title": self.title,
            "type": self.type,
            "priority": self.priority,
            "commentId": self.comment_id,
            "preview": self.preview,
            "deletedBy": self.deleted_by,
        }
        return {key: value for key, value in raw.items() if value is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["AuditMetadata"]:
        if not data:
            return None
        return cls(
            title=data.get("title"),
            type=data.get("type"),
            priority=data.get("priority"),
            comment_id=data.get("commentId"),
            preview=data.get("preview"),
            deleted_by=data.get("deletedBy"),
        )


@dataclass
class AuditLogEntry:
    id: str
    issue_id: str
    user_id: str
    action: AuditAction
    # declared before ``field`` below, which shadows dataclasses.field in this body
    created_at: datetime = field(default_factory=utcnow)
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    metadata: Optional[AuditMetadata] = None


@dataclass
class IssueFilters:
    status: List[IssueStatus] = field(default_factory=list)
    priority: List[IssuePriority] = field(default_factory=list)
    type: List[IssueType] = field(default_factory=list)
    assigned_to: Optional[str] = None
    reported_by: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    search: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20
