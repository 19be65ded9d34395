from __future__ import annotations

import asyncio
from enum import Enum
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from fastapi import APIRouter, Cookie, Depends, Query, Response

from issuetrack.api.schemas import (
    AccessTokenResponse,
    AuditEntryResponse,
    AuthResponse,
    CommentRequest,
    CommentResponse,
    Envelope,
    IssueCreateRequest,
    IssueResponse,
    IssueUpdateRequest,
    LoginRequest,
    RegisterRequest,
    StatsResponse,
    TimelineResponse,
    UserResponse,
)
from issuetrack.api.security import (
    api_rate_limit,
    auth_rate_limit,
    get_user,
    public_rate_limit,
    require_role,
)
from issuetrack.logging import get_logger
from issuetrack.service.audit import DEFAULT_TIMELINE_LIMIT
from issuetrack.service.auth import AuthContext
from issuetrack.service.errors import NotFoundError, ValidationError
from issuetrack.service.issues import DEFAULT_PAGE_SIZE
from issuetrack.service.runtime import Runtime, get_runtime
from issuetrack.storage.models import (
    IssueFilters,
    IssuePriority,
    IssueStatus,
    IssueType,
    Role,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refreshToken"

_SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "priority": "priority",
    "status": "status",
    "title": "title",
}

E = TypeVar("E", bound=Enum)


def _set_refresh_cookie(response: Response, runtime: Runtime, refresh_token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
    )


def _load_users(runtime: Runtime, user_ids: Iterable[Optional[str]]) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for user_id in {uid for uid in user_ids if uid}:
        user = runtime.store.get_user(user_id)
        if user:
            users[user_id] = user
    return users


async def _users_by_id(
    runtime: Runtime, user_ids: Iterable[Optional[str]]
) -> Dict[str, User]:
    return await asyncio.to_thread(_load_users, runtime, list(user_ids))


def _parse_enum_list(raw: Optional[str], enum_cls: Type[E], name: str) -> List[E]:
    if not raw:
        return []
    values: List[E] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(enum_cls(part))
        except ValueError as exc:
            raise ValidationError(
                f"Invalid {name} filter: {part}",
                details={"allowed": [member.value for member in enum_cls]},
            ) from exc
    return values


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


# auth


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def register(body: RegisterRequest, response: Response):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.register,
        body.email,
        body.password,
        body.first_name,
        body.last_name,
    )
    _set_refresh_cookie(response, runtime, result.tokens.refresh_token)
    return Envelope(
        success=True,
        data=_dump(
            AuthResponse(
                user=UserResponse.from_model(result.user),
                access_token=result.tokens.access_token,
            )
        ),
        message="Registration successful",
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def login(body: LoginRequest, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Raises:
        401: unknown email, wrong password or deactivated account
        423: account locked after repeated failures
        429: too many auth attempts from this client
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    _set_refresh_cookie(response, runtime, result.tokens.refresh_token)
    return Envelope(
        success=True,
        data=_dump(
            AuthResponse(
                user=UserResponse.from_model(result.user),
                access_token=result.tokens.access_token,
            )
        ),
        message="Login successful",
    )


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(public_rate_limit)],
)
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.refresh, refresh_token)
    _set_refresh_cookie(response, runtime, result.tokens.refresh_token)
    return Envelope(
        success=True,
        data=_dump(AccessTokenResponse(access_token=result.tokens.access_token)),
        message="Token refreshed successfully",
    )


@router.post(
    "/auth/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(public_rate_limit)],
)
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, refresh_token)
    _clear_refresh_cookie(response, runtime)
    return Envelope(success=True, data=None, message="Logged out successfully")


# users


@router.get(
    "/users/me",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(api_rate_limit)],
)
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if not user:
        logger.warning("principal_user_missing", user_id=principal.user_id)
        raise NotFoundError("User not found")
    return Envelope(success=True, data=_dump(UserResponse.from_model(user, include_updated=True)))


# issues


@router.get(
    "/issues",
    response_model=Envelope,
    tags=["issues"],
    dependencies=[Depends(api_rate_limit)],
)
async def list_issues(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None, alias="assignedTo"),
    reported_by: Optional[str] = Query(None, alias="reportedBy"),
    tags: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    if sort_by not in _SORT_FIELDS:
        raise ValidationError(
            f"Invalid sortBy: {sort_by}", details={"allowed": sorted(_SORT_FIELDS)}
        )
    filters = IssueFilters(
        status=_parse_enum_list(status, IssueStatus, "status"),
        priority=_parse_enum_list(priority, IssuePriority, "priority"),
        type=_parse_enum_list(type, IssueType, "type"),
        assigned_to=assigned_to or None,
        reported_by=reported_by or None,
        tags=[t.strip() for t in (tags or "").split(",") if t.strip()],
        search=search.strip() if search and search.strip() else None,
        sort_by=_SORT_FIELDS[sort_by],
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    runtime = get_runtime()
    issues, meta = await asyncio.to_thread(runtime.issues.list, filters)
    users = await _users_by_id(
        runtime, [i.assigned_to for i in issues] + [i.reported_by for i in issues]
    )
    return Envelope(
        success=True,
        data=[_dump(IssueResponse.from_model(issue, users=users)) for issue in issues],
        meta=meta.to_dict(),
    )


@router.post(
    "/issues",
    response_model=Envelope,
    status_code=201,
    tags=["issues"],
    dependencies=[Depends(api_rate_limit)],
)
async def create_issue(body: IssueCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    issue = await asyncio.to_thread(
        runtime.issues.create,
        principal,
        title=body.title,
        description=body.description,
        issue_type=body.type,
        priority=body.priority,
        tags=body.tags,
        assigned_to=body.assigned_to,
    )
    users = await _users_by_id(runtime, [issue.assigned_to, issue.reported_by])
    return Envelope(
        success=True,
        data=_dump(IssueResponse.from_model(issue, users=users)),
        message="Issue created successfully",
    )


@router.get(
    "/issues/{issue_id}",
    response_model=Envelope,
    tags=["issues"],
    dependencies=[Depends(api_rate_limit)],
)
async def get_issue(issue_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    issue = await asyncio.to_thread(runtime.issues.get, issue_id)
    users = await _users_by_id(runtime, [issue.assigned_to, issue.reported_by])
    return Envelope(success=True, data=_dump(IssueResponse.from_model(issue, users=users)))


@router.patch(
    "/issues/{issue_id}",
    response_model=Envelope,
    tags=["issues"],
    dependencies=[Depends(api_rate_limit)],
)
async def update_issue(
    issue_id: str,
    body: IssueUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    issue = await asyncio.to_thread(runtime.issues.update, principal, issue_id, body.changes())
    users = await _users_by_id(runtime, [issue.assigned_to, issue.reported_by])
    return Envelope(
        success=True,
        data=_dump(IssueResponse.from_model(issue, users=users)),
        message="Issue updated successfully",
    )


@router.delete(
    "/issues/{issue_id}",
    response_model=Envelope,
    tags=["issues"],
    dependencies=[Depends(api_rate_limit)],
)
async def delete_issue(
    issue_id: str,
    principal: AuthContext = Depends(require_role(Role.MANAGER, Role.ADMIN)),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.issues.delete, principal, issue_id)
    return Envelope(success=True, data=None, message="Issue deleted successfully")


# comments


@router.get(
    "/issues/{issue_id}/comments",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(api_rate_limit)],
)
async def list_comments(issue_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    comments = await asyncio.to_thread(runtime.comments.list, issue_id)
    users = await _users_by_id(runtime, [c.author_id for c in comments])
    return Envelope(
        success=True,
        data=[_dump(CommentResponse.from_model(c, users=users)) for c in comments],
    )


@router.post(
    "/issues/{issue_id}/comments",
    response_model=Envelope,
    status_code=201,
    tags=["comments"],
    dependencies=[Depends(api_rate_limit)],
)
async def create_comment(
    issue_id: str,
    body: CommentRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    comment = await asyncio.to_thread(runtime.comments.create, principal, issue_id, body.text)
    users = await _users_by_id(runtime, [comment.author_id])
    return Envelope(
        success=True,
        data=_dump(CommentResponse.from_model(comment, users=users)),
        message="Comment added successfully",
    )


@router.patch(
    "/comments/{comment_id}",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(api_rate_limit)],
)
async def update_comment(
    comment_id: str,
    body: CommentRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    comment = await asyncio.to_thread(runtime.comments.update, principal, comment_id, body.text)
    users = await _users_by_id(runtime, [comment.author_id])
    return Envelope(
        success=True,
        data=_dump(CommentResponse.from_model(comment, users=users)),
        message="Comment updated successfully",
    )


@router.delete(
    "/comments/{comment_id}",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(api_rate_limit)],
)
async def delete_comment(comment_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.comments.delete, principal, comment_id)
    return Envelope(success=True, data=None, message="Comment deleted successfully")


# timeline and stats


@router.get(
    "/issues/{issue_id}/timeline",
    response_model=Envelope,
    tags=["audit"],
    dependencies=[Depends(api_rate_limit)],
)
async def get_timeline(
    issue_id: str,
    limit: int = Query(DEFAULT_TIMELINE_LIMIT, ge=1),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    issue = await asyncio.to_thread(runtime.issues.get, issue_id)
    entries = await asyncio.to_thread(runtime.audit.timeline, issue_id, limit)
    users = await _users_by_id(runtime, [e.user_id for e in entries])
    timeline = TimelineResponse(
        issue_id=issue.id,
        issue_title=issue.title,
        timeline=[AuditEntryResponse.from_model(e, users=users) for e in entries],
        total=len(entries),
    )
    return Envelope(success=True, data=_dump(timeline))


@router.get(
    "/stats",
    response_model=Envelope,
    tags=["stats"],
    dependencies=[Depends(api_rate_limit)],
)
async def get_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = await asyncio.to_thread(runtime.stats.dashboard, principal.user_id)
    users = await _users_by_id(runtime, [e.user_id for e in stats.recent_activity])
    body = StatsResponse(
        total_issues=stats.total_issues,
        open_issues=stats.open_issues,
        in_progress_issues=stats.in_progress_issues,
        resolved_issues=stats.resolved_issues,
        closed_issues=stats.closed_issues,
        my_assigned_issues=stats.my_assigned_issues,
        my_reported_issues=stats.my_reported_issues,
        critical_issues=stats.critical_issues,
        high_priority_issues=stats.high_priority_issues,
        average_resolution_time=stats.average_resolution_time,
        issues_by_status=stats.issues_by_status,
        issues_by_priority=stats.issues_by_priority,
        issues_by_type=stats.issues_by_type,
        recent_activity=[
            AuditEntryResponse.from_model(e, users=users) for e in stats.recent_activity
        ],
    )
    return Envelope(success=True, data=_dump(body))
