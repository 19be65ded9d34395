from __future__ import annotations

from typing import TYPE_CHECKING, List

from issuetrack.logging import get_logger
from issuetrack.service.audit import AuditRecorder, comment_preview
from issuetrack.service.auth import AuthContext
from issuetrack.service.errors import AuthorizationError, NotFoundError
from issuetrack.service.rbac import ADMIN_ONLY, authorize
from issuetrack.storage.models import AuditAction, AuditMetadata, Comment

if TYPE_CHECKING:
    from issuetrack.storage.memory import MemoryStore
    from issuetrack.storage.postgres import PostgresStore

logger = get_logger(__name__)


class CommentService:
    """Comments on live issues; edits are author-only, deletes author or admin."""

    def __init__(self, store: "MemoryStore | PostgresStore", audit: AuditRecorder) -> None:
        self.store = store
        self.audit = audit

    def _live_issue(self, issue_id: str):
        issue = self.store.get_issue(issue_id)
        if not issue:
            raise NotFoundError("Issue not found")
        return issue

    def _comment(self, comment_id: str) -> Comment:
        comment = self.store.get_comment(comment_id)
        if not comment:
            raise NotFoundError("Comment not found")
        return comment

    def list(self, issue_id: str) -> List[Comment]:
        self._live_issue(issue_id)
        return self.store.list_comments(issue_id)

    def create(self, actor: AuthContext, issue_id: str, text: str) -> Comment:
        self._live_issue(issue_id)
        comment = self.store.create_comment(issue_id, actor.user_id, text)
        self.audit.record(
            issue_id,
            actor.user_id,
            AuditAction.COMMENTED,
            metadata=AuditMetadata(comment_id=comment.id, preview=comment_preview(text)),
        )
        logger.info("comment_created", comment_id=comment.id, issue_id=issue_id)
        return comment

    def update(self, actor: AuthContext, comment_id: str, text: str) -> Comment:
        comment = self._comment(comment_id)
        if comment.author_id != actor.user_id:
            raise AuthorizationError("You can only edit your own comments")
        updated = self.store.update_comment(comment_id, text)
        if not updated:
            raise NotFoundError("Comment not found")
        self.audit.record(
            comment.issue_id,
            actor.user_id,
            AuditAction.COMMENT_EDITED,
            field="text",
            old_value=comment_preview(comment.text),
            new_value=comment_preview(text),
            metadata=AuditMetadata(comment_id=comment_id),
        )
        logger.info("comment_edited", comment_id=comment_id)
        return updated

    def delete(self, actor: AuthContext, comment_id: str) -> Comment:
        comment = self._comment(comment_id)
        if comment.author_id != actor.user_id and not authorize(actor.role, ADMIN_ONLY):
            raise AuthorizationError("You can only delete your own comments")
        deleted = self.store.soft_delete_comment(comment_id)
        if not deleted:
            raise NotFoundError("Comment not found")
        self.audit.record(
            comment.issue_id,
            actor.user_id,
            AuditAction.COMMENT_DELETED,
            metadata=AuditMetadata(
                comment_id=comment_id,
                deleted_by=actor.email,
                preview=comment_preview(comment.text),
            ),
        )
        logger.info("comment_deleted", comment_id=comment_id, user_id=actor.user_id)
        return deleted
