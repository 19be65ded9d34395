"""Tests for audit diffing and the best-effort recorder."""

from unittest.mock import MagicMock, patch

import pytest

from issuetrack.service.audit import (
    MAX_TIMELINE_LIMIT,
    UNASSIGNED,
    AuditRecorder,
    comment_preview,
    diff_issue_changes,
    preview,
)
from issuetrack.storage.memory import MemoryStore
from issuetrack.storage.models import (
    AuditAction,
    AuditMetadata,
    Issue,
    IssuePriority,
    IssueStatus,
    IssueType,
)


def _issue(**overrides) -> Issue:
    base = dict(
        id="issue-1",
        title="Login page broken",
        description="The login page returns a 500 on submit.",
        type=IssueType.BUG,
        reported_by="reporter",
        tags=["auth", "ui"],
    )
    base.update(overrides)
    return Issue(**base)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestPreview:
    def test_short_text_is_untouched(self):
        assert preview("hello", 50) == "hello"
        assert comment_preview("x" * 50) == "x" * 50

    def test_long_text_is_truncated_with_ellipsis(self):
        assert comment_preview("y" * 51) == "y" * 50 + "..."

    def test_none_passes_through(self):
        assert preview(None, 10) is None


class TestDiff:
    def test_one_entry_per_changed_field(self):
        changes = diff_issue_changes(
            _issue(),
            {"status": IssueStatus.IN_PROGRESS, "priority": IssuePriority.HIGH, "title": "New title"},
        )
        by_field = {c.field: c for c in changes}

        assert by_field["status"].action == AuditAction.STATUS_CHANGED
        assert (by_field["status"].old_value, by_field["status"].new_value) == ("OPEN", "IN_PROGRESS")
        assert by_field["priority"].action == AuditAction.PRIORITY_CHANGED
        assert by_field["title"].action == AuditAction.UPDATED
        assert by_field["title"].old_value == "Login page broken"

    def test_unchanged_values_produce_nothing(self):
        assert diff_issue_changes(_issue(), {"status": IssueStatus.OPEN, "title": "Login page broken"}) == []

    def test_tags_compare_order_insensitively(self):
        assert diff_issue_changes(_issue(), {"tags": ["ui", "auth"]}) == []
        [change] = diff_issue_changes(_issue(), {"tags": ["auth", "backend"]})
        assert change.old_value == "auth, ui"
        assert change.new_value == "auth, backend"

    def test_assignment_uses_unassigned_sentinel(self):
        [assigned] = diff_issue_changes(_issue(), {"assigned_to": "user-2"})
        assert assigned.action == AuditAction.ASSIGNED
        assert assigned.field == "assignedTo"
        assert assigned.old_value == UNASSIGNED
        assert assigned.new_value == "user-2"

        [cleared] = diff_issue_changes(_issue(assigned_to="user-2"), {"assigned_to": None})
        assert cleared.action == AuditAction.UNASSIGNED
        assert cleared.new_value == UNASSIGNED

    def test_description_values_are_previewed(self):
        [change] = diff_issue_changes(_issue(), {"description": "d" * 150})
        assert change.new_value == "d" * 100 + "..."


class TestRecorder:
    def test_record_appends_entry(self, store):
        recorder = AuditRecorder(store)
        entry = recorder.record(
            "issue-1",
            "user-1",
            AuditAction.CREATED,
            metadata=AuditMetadata(title="T", type="BUG", priority="LOW"),
        )

        assert entry is not None
        [stored] = store.list_audit_for_issue("issue-1")
        assert stored.id == entry.id
        assert stored.metadata.to_dict() == {"title": "T", "type": "BUG", "priority": "LOW"}

    def test_failed_write_is_logged_and_swallowed(self):
        failing = MagicMock()
        failing.append_audit.side_effect = RuntimeError("disk full")
        recorder = AuditRecorder(failing)

        with patch("issuetrack.service.audit.logger") as mock_logger:
            result = recorder.record("issue-1", "user-1", AuditAction.UPDATED, field="title")

        assert result is None
        mock_logger.error.assert_called_once()
        args, kwargs = mock_logger.error.call_args
        assert args[0] == "audit_write_failed"
        assert kwargs["action"] == "UPDATED"
        assert kwargs["error"] == "disk full"

    def test_timeline_is_newest_first_and_capped(self, store):
        recorder = AuditRecorder(store)
        for i in range(MAX_TIMELINE_LIMIT + 5):
            recorder.record("issue-1", "user-1", AuditAction.UPDATED, field="title", new_value=str(i))

        timeline = recorder.timeline("issue-1", limit=500)

        assert len(timeline) == MAX_TIMELINE_LIMIT
        assert timeline[0].new_value == str(MAX_TIMELINE_LIMIT + 4)

    def test_timeline_is_scoped_to_issue(self, store):
        recorder = AuditRecorder(store)
        recorder.record("issue-1", "u", AuditAction.CREATED)
        recorder.record("issue-2", "u", AuditAction.CREATED)

        assert [e.issue_id for e in recorder.timeline("issue-2")] == ["issue-2"]
