from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List

from issuetrack.service.audit import AuditRecorder
from issuetrack.storage.models import (
    AuditLogEntry,
    IssuePriority,
    IssueStatus,
    IssueType,
)

if TYPE_CHECKING:
    from issuetrack.storage.memory import MemoryStore
    from issuetrack.storage.postgres import PostgresStore

RECENT_ACTIVITY_LIMIT = 10
_SETTLED = {IssueStatus.RESOLVED, IssueStatus.CLOSED}


@dataclass
class DashboardStats:
    total_issues: int = 0
    open_issues: int = 0
    in_progress_issues: int = 0
    resolved_issues: int = 0
    closed_issues: int = 0
    my_assigned_issues: int = 0
    my_reported_issues: int = 0
    critical_issues: int = 0
    high_priority_issues: int = 0
    average_resolution_time: int = 0
    issues_by_status: Dict[str, int] = field(default_factory=dict)
    issues_by_priority: Dict[str, int] = field(default_factory=dict)
    issues_by_type: Dict[str, int] = field(default_factory=dict)
    recent_activity: List[AuditLogEntry] = field(default_factory=list)


class StatsService:
    def __init__(self, store: "MemoryStore | PostgresStore", audit: AuditRecorder) -> None:
        self.store = store
        self.audit = audit

    def dashboard(self, user_id: str) -> DashboardStats:
        issues = self.store.list_active_issues()
        by_status = Counter(i.status for i in issues)
        by_priority = Counter(i.priority for i in issues)
        by_type = Counter(i.type for i in issues)

        unsettled = [i for i in issues if i.status not in _SETTLED]
        resolution_hours = [
            (i.resolved_at - i.created_at).total_seconds() / 3600
            for i in issues
            if i.status == IssueStatus.RESOLVED and i.resolved_at is not None
        ]
        average = round(sum(resolution_hours) / len(resolution_hours)) if resolution_hours else 0

        return DashboardStats(
            total_issues=len(issues),
            open_issues=by_status[IssueStatus.OPEN],
            in_progress_issues=by_status[IssueStatus.IN_PROGRESS],
            resolved_issues=by_status[IssueStatus.RESOLVED],
            closed_issues=by_status[IssueStatus.CLOSED],
            my_assigned_issues=sum(1 for i in unsettled if i.assigned_to == user_id),
            my_reported_issues=sum(1 for i in issues if i.reported_by == user_id),
            critical_issues=sum(1 for i in unsettled if i.priority == IssuePriority.CRITICAL),
            high_priority_issues=sum(1 for i in unsettled if i.priority == IssuePriority.HIGH),
            average_resolution_time=average,
            issues_by_status={s.value: by_status[s] for s in IssueStatus},
            issues_by_priority={p.value: by_priority[p] for p in IssuePriority},
            issues_by_type={t.value: by_type[t] for t in IssueType},
            recent_activity=self.audit.recent_activity(RECENT_ACTIVITY_LIMIT),
        )
