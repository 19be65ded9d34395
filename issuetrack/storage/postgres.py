from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from issuetrack.logging import get_logger
from issuetrack.service.lockout import LockoutPolicy
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

_REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "refresh_token",
    "issue",
    "issue_comment",
    "audit_log",
]

_PRIORITY_ORDER = "array_position(ARRAY['LOW','MEDIUM','HIGH','CRITICAL']::text[], priority)"
_STATUS_ORDER = (
    "array_position(ARRAY['OPEN','IN_PROGRESS','RESOLVED','CLOSED']::text[], status)"
)

_ISSUE_SORT_SQL = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "priority": _PRIORITY_ORDER,
    "status": _STATUS_ORDER,
    "title": "lower(title)",
}

_UPDATABLE_ISSUE_COLUMNS = {
    "title",
    "description",
    "type",
    "status",
    "priority",
    "tags",
    "assigned_to",
    "resolved_at",
    "closed_at",
    "updated_at",
}


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_db_value(v) for v in value]
    return value


class PostgresStore:
    """Postgres-backed store; schema lives in ``scripts/schema.sql``."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> RefreshTokenEntry:
        return RefreshTokenEntry(
            hashed_token=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def _row_to_user(
        self, row: Dict[str, Any], tokens: Sequence[Dict[str, Any]] = ()
    ) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=Role(row["role"]),
            is_active=row["is_active"],
            is_verified=row["is_verified"],
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            refresh_tokens=[self._row_to_token(t) for t in tokens],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_user(self, conn, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        tokens = conn.execute(
            "SELECT token_hash, expires_at, created_at FROM refresh_token WHERE user_id = %s",
            (row["id"],),
        ).fetchall()
        return self._row_to_user(row, tokens)

    @staticmethod
    def _row_to_issue(row: Dict[str, Any]) -> Issue:
        return Issue(
            id=str(row["id"]),
            title=row["title"],
            description=row["description"],
            type=IssueType(row["type"]),
            reported_by=str(row["reported_by"]),
            status=IssueStatus(row["status"]),
            priority=IssuePriority(row["priority"]),
            tags=list(row.get("tags") or []),
            assigned_to=str(row["assigned_to"]) if row.get("assigned_to") else None,
            resolved_at=row.get("resolved_at"),
            closed_at=row.get("closed_at"),
            deleted_at=row.get("deleted_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_comment(row: Dict[str, Any]) -> Comment:
        return Comment(
            id=str(row["id"]),
            issue_id=str(row["issue_id"]),
            author_id=str(row["author_id"]),
            text=row["text"],
            is_edited=row["is_edited"],
            edited_at=row.get("edited_at"),
            deleted_at=row.get("deleted_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_audit(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            issue_id=str(row["issue_id"]),
            user_id=str(row["user_id"]),
            action=AuditAction(row["action"]),
            field=row.get("field"),
            old_value=row.get("old_value"),
            new_value=row.get("new_value"),
            metadata=AuditMetadata.from_dict(row.get("metadata")),
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, is_active, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        first_name,
                        last_name,
                        Role(role).value,
                        is_active,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            return self._load_user(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
            return self._load_user(conn, row)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
            return self._load_user(conn, row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", detail={"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def register_failed_login(
        self, user_id: str, *, now: datetime, policy: LockoutPolicy
    ) -> Optional[User]:
        # One statement: every SET expression sees the pre-update row.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                        ELSE login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN NULL
                        WHEN lock_until IS NULL AND login_attempts + 1 >= %(max_attempts)s
                            THEN %(lock_until)s
                        ELSE lock_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max_attempts": policy.max_attempts,
                    "lock_until": now + policy.lock_duration,
                    "user_id": user_id,
                },
            ).fetchone()
            return self._load_user(conn, row)

    def reset_login_attempts(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET login_attempts = 0, lock_until = NULL WHERE id = %s",
                (user_id,),
            )

    # refresh tokens
    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s AND expires_at <= %s",
                    (user_id, now),
                )
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (entry.hashed_token, user_id, entry.expires_at, entry.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", detail={"user_id": user_id}
            )

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_entry: RefreshTokenEntry,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Replace ``old_hash`` with ``new_entry`` in one transaction.

        The ``DELETE ... RETURNING`` takes the row lock, so of two concurrent
        rotations of the same token only one gets a row back.
        """
        now = now or utcnow()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM refresh_token WHERE token_hash = %s RETURNING user_id, expires_at",
                    (old_hash,),
                ).fetchone()
                if not row or row["expires_at"] <= now:
                    return None
                conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s AND expires_at <= %s",
                    (row["user_id"], now),
                )
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        new_entry.hashed_token,
                        row["user_id"],
                        new_entry.expires_at,
                        new_entry.created_at,
                    ),
                )
                user_row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (row["user_id"],)
                ).fetchone()
                return self._load_user(conn, user_row)

    def revoke_refresh_token(self, hashed_token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING user_id",
                (hashed_token,),
            ).fetchone()
        return row is not None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO issue (id, title, description, type, reported_by, priority, tags, assigned_to)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        title,
                        description,
                        IssueType(issue_type).value,
                        reported_by,
                        IssuePriority(priority).value,
                        list(tags or []),
                        assigned_to,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            field = "assigned_to" if "assigned_to" in str(exc) else "reported_by"
            raise ConstraintViolation("referenced user not found", field=field)
        return self._row_to_issue(row)

    def get_issue(self, issue_id: str, *, include_deleted: bool = False) -> Optional[Issue]:
        query = "SELECT * FROM issue WHERE id = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (issue_id,)).fetchone()
        return self._row_to_issue(row) if row else None

    def update_issue(self, issue_id: str, changes: Dict[str, Any]) -> Optional[Issue]:
        unknown = set(changes) - _UPDATABLE_ISSUE_COLUMNS
        if unknown:
            raise ValueError(f"unknown issue field: {', '.join(sorted(unknown))}")
        values = {key: _db_value(value) for key, value in changes.items()}
        values.setdefault("updated_at", utcnow())
        assignments = ", ".join(f"{column} = %({column})s" for column in values)
        values["issue_id"] = issue_id
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE issue SET {assignments} WHERE id = %(issue_id)s AND deleted_at IS NULL RETURNING *",
                    values,
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("assignee not found", field="assigned_to")
        return self._row_to_issue(row) if row else None

    def soft_delete_issue(
        self, issue_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Issue]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE issue SET deleted_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (now, now, issue_id),
            ).fetchone()
        return self._row_to_issue(row) if row else None

    def _issue_filter_clause(self, filters: IssueFilters) -> tuple[str, List[Any]]:
        clauses = ["deleted_at IS NULL"]
        params: List[Any] = []
        if filters.status:
            clauses.append("status = ANY(%s)")
            params.append(_db_value(filters.status))
        if filters.priority:
            clauses.append("priority = ANY(%s)")
            params.append(_db_value(filters.priority))
        if filters.type:
            clauses.append("type = ANY(%s)")
            params.append(_db_value(filters.type))
        if filters.assigned_to:
            clauses.append("assigned_to = %s")
            params.append(filters.assigned_to)
        if filters.reported_by:
            clauses.append("reported_by = %s")
            params.append(filters.reported_by)
        if filters.tags:
            clauses.append("tags && %s::text[]")
            params.append(list(filters.tags))
        if filters.search:
            pattern = f"%{_escape_like(filters.search)}%"
            clauses.append("(title ILIKE %s OR description ILIKE %s)")
            params.extend([pattern, pattern])
        return " AND ".join(clauses), params

    def list_issues(self, filters: IssueFilters) -> tuple[List[Issue], int]:
        where, params = self._issue_filter_clause(filters)
        order_expr = _ISSUE_SORT_SQL.get(filters.sort_by, "created_at")
        direction = "ASC" if filters.sort_order == "asc" else "DESC"
        offset = (filters.page - 1) * filters.limit
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM issue WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM issue WHERE {where} ORDER BY {order_expr} {direction}, id LIMIT %s OFFSET %s",
                [*params, filters.limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_issue(row) for row in rows], total

    def list_active_issues(self) -> List[Issue]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM issue WHERE deleted_at IS NULL").fetchall()
        return [self._row_to_issue(row) for row in rows]

    # comments
    def create_comment(self, issue_id: str, author_id: str, text: str) -> Comment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO issue_comment (id, issue_id, author_id, text)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), issue_id, author_id, text),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("issue not found", field="issue_id")
        return self._row_to_comment(row)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM issue_comment WHERE id = %s AND deleted_at IS NULL",
                (comment_id,),
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def update_comment(
        self, comment_id: str, text: str, *, now: Optional[datetime] = None
    ) -> Optional[Comment]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE issue_comment
                SET text = %s, is_edited = TRUE, edited_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (text, now, now, comment_id),
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def soft_delete_comment(
        self, comment_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Comment]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE issue_comment SET deleted_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (now, now, comment_id),
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def list_comments(self, issue_id: str) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM issue_comment
                WHERE issue_id = %s AND deleted_at IS NULL
                ORDER BY created_at DESC
                """,
                (issue_id,),
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (id, issue_id, user_id, action, field, old_value, new_value, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    issue_id,
                    user_id,
                    AuditAction(action).value,
                    field,
                    old_value,
                    new_value,
                    Jsonb(metadata.to_dict()) if metadata else None,
                ),
            ).fetchone()
        return self._row_to_audit(row)

    def list_audit_for_issue(self, issue_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log WHERE issue_id = %s
                ORDER BY created_at DESC, seq DESC LIMIT %s
                """,
                (issue_id, limit),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]

    def list_recent_audit(self, limit: int = 10) -> List[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log ORDER BY created_at DESC, seq DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]
