from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional

from issuetrack.logging import get_logger
from issuetrack.storage.models import (
    AuditAction,
    AuditLogEntry,
    AuditMetadata,
    Issue,
)

if TYPE_CHECKING:
    from issuetrack.storage.memory import MemoryStore
    from issuetrack.storage.postgres import PostgresStore

logger = get_logger(__name__)

MAX_TIMELINE_LIMIT = 100
DEFAULT_TIMELINE_LIMIT = 50
UNASSIGNED = "unassigned"

_DESCRIPTION_PREVIEW = 100
_COMMENT_PREVIEW = 50

_FIELD_ACTIONS = {
    "title": AuditAction.UPDATED,
    "description": AuditAction.UPDATED,
    "type": AuditAction.UPDATED,
    "tags": AuditAction.UPDATED,
    "status": AuditAction.STATUS_CHANGED,
    "priority": AuditAction.PRIORITY_CHANGED,
}

# Public (camelCase) field names written into audit rows
_FIELD_LABELS = {"assigned_to": "assignedTo"}


def preview(text: Optional[str], length: int) -> Optional[str]:
    if text is None:
        return None
    if len(text) <= length:
        return text
    return text[:length] + "..."


def comment_preview(text: str) -> str:
    return preview(text, _COMMENT_PREVIEW) or ""


@dataclass(frozen=True)
class FieldChange:
    action: AuditAction
    field: str
    old_value: Optional[str]
    new_value: Optional[str]


def _display(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value"):
        return str(value.value)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def diff_issue_changes(before: Issue, changes: Mapping[str, Any]) -> List[FieldChange]:
    """One :class:`FieldChange` per attribute whose value actually differs."""
    result: List[FieldChange] = []
    for field_name, new in changes.items():
        old = getattr(before, field_name)
        if field_name == "tags":
            if sorted(old or []) == sorted(new or []):
                continue
        elif old == new:
            continue

        if field_name == "assigned_to":
            result.append(
                FieldChange(
                    action=AuditAction.ASSIGNED if new else AuditAction.UNASSIGNED,
                    field=_FIELD_LABELS[field_name],
                    old_value=old or UNASSIGNED,
                    new_value=new or UNASSIGNED,
                )
            )
            continue

        action = _FIELD_ACTIONS.get(field_name)
        if action is None:
            continue
        old_value, new_value = _display(old), _display(new)
        if field_name == "description":
            old_value = preview(old_value, _DESCRIPTION_PREVIEW)
            new_value = preview(new_value, _DESCRIPTION_PREVIEW)
        result.append(FieldChange(action, field_name, old_value, new_value))
    return result


class AuditRecorder:
    """Append-only audit writer.

    Writes are best-effort: a failed append is logged with full context and
    swallowed so the already-committed mutation is still reported as done.
    """

    def __init__(self, store: "MemoryStore | PostgresStore") -> None:
        self.store = store

    def record(
        self,
        issue_id: str,
        user_id: str,
        action: AuditAction,
        *,
        field: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> Optional[AuditLogEntry]:
        try:
            return self.store.append_audit(
                issue_id,
                user_id,
                action,
                field=field,
                old_value=old_value,
                new_value=new_value,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                issue_id=issue_id,
                user_id=user_id,
                action=AuditAction(action).value,
                field=field,
                error=str(exc),
                exc_info=True,
            )
            return None

    def record_changes(
        self, issue_id: str, user_id: str, changes: Iterable[FieldChange]
    ) -> List[AuditLogEntry]:
        written: List[AuditLogEntry] = []
        for change in changes:
            entry = self.record(
                issue_id,
                user_id,
                change.action,
                field=change.field,
                old_value=change.old_value,
                new_value=change.new_value,
            )
            if entry:
                written.append(entry)
        return written

    def timeline(self, issue_id: str, limit: int = DEFAULT_TIMELINE_LIMIT) -> List[AuditLogEntry]:
        """Newest-first entries for one issue, at most ``MAX_TIMELINE_LIMIT``."""
        bounded = max(1, min(int(limit), MAX_TIMELINE_LIMIT))
        return self.store.list_audit_for_issue(issue_id, limit=bounded)

    def recent_activity(self, limit: int = 10) -> List[AuditLogEntry]:
        return self.store.list_recent_audit(limit=limit)
