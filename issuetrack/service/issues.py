from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from issuetrack.logging import get_logger
from issuetrack.service.audit import AuditRecorder, diff_issue_changes
from issuetrack.service.auth import AuthContext
from issuetrack.service.errors import NotFoundError, ValidationError
from issuetrack.service.rbac import MANAGER_OR_ADMIN, ensure_issue_fields_allowed, ensure_role
from issuetrack.storage.errors import ConstraintViolation
from issuetrack.storage.models import (
    STATUS_TRANSITIONS,
    AuditAction,
    AuditMetadata,
    Issue,
    IssueFilters,
    IssuePriority,
    IssueStatus,
    IssueType,
    utcnow,
)

if TYPE_CHECKING:
    from issuetrack.storage.memory import MemoryStore
    from issuetrack.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Attribute names a PATCH may touch
MUTABLE_ISSUE_FIELDS = frozenset(
    {"title", "description", "type", "status", "priority", "tags", "assigned_to"}
)


@dataclass
class PageMeta:
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasNextPage": self.page < self.total_pages,
            "hasPrevPage": self.page > 1,
        }


def ensure_transition(current: IssueStatus, target: IssueStatus) -> None:
    if current == target:
        return
    if target not in STATUS_TRANSITIONS[current]:
        allowed = ", ".join(s.value for s in STATUS_TRANSITIONS[current])
        raise ValidationError(
            f"Cannot change status from {current.value} to {target.value}",
            details={"allowedTransitions": allowed},
        )


class IssueService:
    def __init__(self, store: "MemoryStore | PostgresStore", audit: AuditRecorder) -> None:
        self.store = store
        self.audit = audit

    def _ensure_assignee(self, assigned_to: Optional[str]) -> None:
        if assigned_to and not self.store.get_user(assigned_to):
            raise NotFoundError("Assigned user not found")

    def get(self, issue_id: str) -> Issue:
        issue = self.store.get_issue(issue_id)
        if not issue:
            raise NotFoundError("Issue not found")
        return issue

    def list(self, filters: IssueFilters) -> tuple[List[Issue], PageMeta]:
        filters.page = max(1, filters.page)
        filters.limit = max(1, min(filters.limit, MAX_PAGE_SIZE))
        issues, total = self.store.list_issues(filters)
        return issues, PageMeta(page=filters.page, limit=filters.limit, total=total)

    def create(
        self,
        actor: AuthContext,
        *,
        title: str,
        description: str,
        issue_type: IssueType,
        priority: IssuePriority = IssuePriority.MEDIUM,
        tags: Optional[Sequence[str]] = None,
        assigned_to: Optional[str] = None,
    ) -> Issue:
        self._ensure_assignee(assigned_to)
        try:
            issue = self.store.create_issue(
                title,
                description,
                issue_type,
                actor.user_id,
                priority=priority,
                tags=tags,
                assigned_to=assigned_to,
            )
        except ConstraintViolation as exc:
            if exc.field == "assigned_to":
                raise NotFoundError("Assigned user not found") from exc
            raise
        self.audit.record(
            issue.id,
            actor.user_id,
            AuditAction.CREATED,
            metadata=AuditMetadata(
                title=issue.title,
                type=issue.type.value,
                priority=issue.priority.value,
            ),
        )
        logger.info("issue_created", issue_id=issue.id, user_id=actor.user_id)
        return issue

    def update(self, actor: AuthContext, issue_id: str, changes: Mapping[str, Any]) -> Issue:
        """Apply a partial update after field-level RBAC and workflow checks.

        Authorization covers every supplied field before anything is written,
        so a rejected request leaves the issue and its audit trail untouched.
        """
        unknown = set(changes) - MUTABLE_ISSUE_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown issue fields", details={"fields": sorted(unknown)}
            )
        ensure_issue_fields_allowed(actor.role, changes.keys())
        before = self.get(issue_id)

        updates: Dict[str, Any] = dict(changes)
        if "assigned_to" in updates:
            self._ensure_assignee(updates["assigned_to"])
        now = utcnow()
        if "status" in updates:
            target = IssueStatus(updates["status"])
            ensure_transition(before.status, target)
            updates["status"] = target
            if target == IssueStatus.RESOLVED and before.resolved_at is None:
                updates["resolved_at"] = now
            if target == IssueStatus.CLOSED and before.closed_at is None:
                updates["closed_at"] = now

        field_changes = diff_issue_changes(before, changes)
        if not field_changes:
            return before

        updates["updated_at"] = now
        try:
            updated = self.store.update_issue(issue_id, updates)
        except ConstraintViolation as exc:
            if exc.field == "assigned_to":
                raise NotFoundError("Assigned user not found") from exc
            raise
        if not updated:
            raise NotFoundError("Issue not found")
        self.audit.record_changes(issue_id, actor.user_id, field_changes)
        logger.info(
            "issue_updated",
            issue_id=issue_id,
            user_id=actor.user_id,
            fields=[c.field for c in field_changes],
        )
        return updated

    def delete(self, actor: AuthContext, issue_id: str) -> Issue:
        ensure_role(actor.role, MANAGER_OR_ADMIN)
        deleted = self.store.soft_delete_issue(issue_id)
        if not deleted:
            raise NotFoundError("Issue not found")
        self.audit.record(
            issue_id,
            actor.user_id,
            AuditAction.DELETED,
            metadata=AuditMetadata(title=deleted.title, deleted_by=actor.email),
        )
        logger.info("issue_deleted", issue_id=issue_id, user_id=actor.user_id)
        return deleted
