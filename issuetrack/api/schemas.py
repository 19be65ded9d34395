from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    field_validator,
    model_serializer,
)
from pydantic.alias_generators import to_camel

from issuetrack.logging import get_correlation_id
from issuetrack.service.errors import ERROR_CODES
from issuetrack.storage.models import (
    AuditLogEntry,
    Comment,
    Issue,
    IssuePriority,
    IssueStatus,
    IssueType,
    Role,
    User,
)

MAX_TAGS = 10
MAX_TAG_LENGTH = 30


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire; either accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# envelope


class ErrorBody(CamelModel):
    code: str
    message: str
    status_code: int
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(CamelModel):
    """``{success, data?, message?, meta?, error?, requestId}``.

    Empty top-level members are omitted; ``data`` stays (possibly null) on
    success so clients can always read it.
    """

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)

    @model_serializer(mode="wrap")
    def _drop_empty_members(self, handler: SerializerFunctionWrapHandler) -> Dict[str, Any]:
        payload = handler(self)
        return {
            key: value
            for key, value in payload.items()
            if value is not None or (key == "data" and self.success)
        }


# requests


class RegisterRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=128)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _strip_names(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


def _validate_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if len(value) > MAX_TAGS:
        raise ValueError(f"Maximum {MAX_TAGS} tags allowed")
    cleaned: List[str] = []
    for tag in value:
        tag = tag.strip()
        if not tag or len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Each tag must be between 1 and {MAX_TAG_LENGTH} characters")
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class IssueCreateRequest(CamelModel):
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    type: IssueType
    priority: IssuePriority = IssuePriority.MEDIUM
    tags: List[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: List[str]) -> List[str]:
        return _validate_tags(value) or []


class IssueUpdateRequest(CamelModel):
    """Partial update; only fields present in the body are applied."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    title: Optional[str] = Field(default=None, min_length=5, max_length=200)
    description: Optional[str] = Field(default=None, min_length=10, max_length=5000)
    type: Optional[IssueType] = None
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    tags: Optional[List[str]] = None
    assigned_to: Optional[str] = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_tags(value)

    def changes(self) -> Dict[str, Any]:
        """Explicitly supplied fields; ``assignedTo: null`` means unassign."""
        supplied = self.model_dump(exclude_unset=True)
        nullable = {"assigned_to"}
        return {
            key: value
            for key, value in supplied.items()
            if value is not None or key in nullable
        }


class CommentRequest(CamelModel):
    text: str = Field(..., min_length=1, max_length=2000)

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)


# responses


class UserSummary(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str

    @classmethod
    def from_model(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )


class UserResponse(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    is_active: bool
    is_verified: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, user: User, *, include_updated: bool = False) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            is_verified=user.is_verified,
            created_at=user.created_at,
            updated_at=user.updated_at if include_updated else None,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    access_token: str


class AccessTokenResponse(CamelModel):
    access_token: str


class IssueResponse(CamelModel):
    id: str
    title: str
    description: str
    type: IssueType
    status: IssueStatus
    priority: IssuePriority
    tags: List[str]
    assigned_to: Optional[str] = None
    reported_by: str
    assignee: Optional[UserSummary] = None
    reporter: Optional[UserSummary] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(
        cls,
        issue: Issue,
        *,
        users: Optional[Dict[str, User]] = None,
    ) -> "IssueResponse":
        users = users or {}
        assignee = users.get(issue.assigned_to) if issue.assigned_to else None
        reporter = users.get(issue.reported_by)
        return cls(
            id=issue.id,
            title=issue.title,
            description=issue.description,
            type=issue.type,
            status=issue.status,
            priority=issue.priority,
            tags=list(issue.tags),
            assigned_to=issue.assigned_to,
            reported_by=issue.reported_by,
            assignee=UserSummary.from_model(assignee) if assignee else None,
            reporter=UserSummary.from_model(reporter) if reporter else None,
            resolved_at=issue.resolved_at,
            closed_at=issue.closed_at,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
        )


class CommentResponse(CamelModel):
    id: str
    issue_id: str
    author_id: str
    author: Optional[UserSummary] = None
    text: str
    is_edited: bool
    edited_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(
        cls, comment: Comment, *, users: Optional[Dict[str, User]] = None
    ) -> "CommentResponse":
        author = (users or {}).get(comment.author_id)
        return cls(
            id=comment.id,
            issue_id=comment.issue_id,
            author_id=comment.author_id,
            author=UserSummary.from_model(author) if author else None,
            text=comment.text,
            is_edited=comment.is_edited,
            edited_at=comment.edited_at,
            created_at=comment.created_at,
            updated_at=comment.updated_at,
        )


class AuditEntryResponse(CamelModel):
    id: str
    issue_id: str
    user_id: str
    user: Optional[UserSummary] = None
    action: str
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    @classmethod
    def from_model(
        cls, entry: AuditLogEntry, *, users: Optional[Dict[str, User]] = None
    ) -> "AuditEntryResponse":
        actor = (users or {}).get(entry.user_id)
        return cls(
            id=entry.id,
            issue_id=entry.issue_id,
            user_id=entry.user_id,
            user=UserSummary.from_model(actor) if actor else None,
            action=entry.action.value,
            field=entry.field,
            old_value=entry.old_value,
            new_value=entry.new_value,
            metadata=entry.metadata.to_dict() if entry.metadata else None,
            created_at=entry.created_at,
        )


class TimelineResponse(CamelModel):
    issue_id: str
    issue_title: str
    timeline: List[AuditEntryResponse]
    total: int


class StatsResponse(CamelModel):
    total_issues: int
    open_issues: int
    in_progress_issues: int
    resolved_issues: int
    closed_issues: int
    my_assigned_issues: int
    my_reported_issues: int
    critical_issues: int
    high_priority_issues: int
    average_resolution_time: int = 0
    issues_by_status: Dict[str, int]
    issues_by_priority: Dict[str, int]
    issues_by_type: Dict[str, int]
    recent_activity: List[AuditEntryResponse]
