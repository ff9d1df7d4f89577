from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, Query, Response

from taskvault.api.schemas import (
    AuthResponse,
    EmptyResponse,
    LoginRequest,
    MeResponse,
    RefreshTokenRequest,
    RegisterRequest,
    TaskCreateRequest,
    TaskEnvelope,
    TaskListResponse,
    TaskResponse,
    TaskUpdateRequest,
    UserResponse,
)
from taskvault.config import Settings, get_settings
from taskvault.logging import get_logger
from taskvault.service.auth import AuthContext
from taskvault.service.runtime import get_runtime
from taskvault.service.tokens import TokenPair
from taskvault.storage.models import Priority, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refreshToken"
_CLEARED_COOKIE_SECONDS = 10


async def get_user(
    token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(token, authorization)


def _cookie_policy(settings: Settings) -> dict:
    if settings.is_production:
        return {"httponly": True, "secure": True, "samesite": "strict", "path": "/"}
    return {"httponly": True, "secure": False, "samesite": "lax", "path": "/"}


def _apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_settings()
    policy = _cookie_policy(settings)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_cookie_ttl_days * 24 * 60 * 60,
        **policy,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        **policy,
    )


def _clear_session_cookies(response: Response) -> None:
    policy = _cookie_policy(get_settings())
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.set_cookie(name, "none", max_age=_CLEARED_COOKIE_SECONDS, **policy)


def _auth_response(response: Response, user: User, tokens: TokenPair) -> AuthResponse:
    _apply_session_cookies(response, tokens)
    return AuthResponse(
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        user=UserResponse.from_user(user),
    )


# -- auth ---------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    response_model_exclude_none=True,
    status_code=201,
    tags=["auth"],
)
async def register(body: RegisterRequest, response: Response):
    """Create an account and open its first session.

    Raises:
        400: If the email is already registered or the body is invalid
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.register(body.name, body.email, body.password)
    return _auth_response(response, user, tokens)


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for a token pair.

    Raises:
        401: Unknown email and wrong password both answer "Invalid credentials"
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    return _auth_response(response, user, tokens)


@router.post(
    "/auth/refresh-token",
    response_model=AuthResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def refresh_token(
    response: Response,
    body: Optional[RefreshTokenRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token; the presented token stops working.

    The token is read from the body, falling back to the ``refreshToken``
    cookie.

    Raises:
        400: If no refresh token was provided
        401: If the token is unknown, already used, or expired
    """
    runtime = get_runtime()
    presented = body.refresh_token if body and body.refresh_token else None
    if not presented and refresh_cookie and refresh_cookie != "none":
        presented = refresh_cookie
    user, tokens = await runtime.auth.refresh(presented)
    return _auth_response(response, user, tokens)


@router.post("/auth/logout", response_model=EmptyResponse, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    _clear_session_cookies(response)
    return EmptyResponse()


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return MeResponse(user=UserResponse.from_user(user, include_created=True))


# -- tasks --------------------------------------------------------------------


@router.get("/tasks", response_model=TaskListResponse, tags=["tasks"])
async def list_tasks(
    principal: AuthContext = Depends(get_user),
    completed: Optional[bool] = Query(None),
    priority: Optional[Priority] = Query(None),
    sort: Optional[str] = Query(None, max_length=32),
    sort_dir: Optional[str] = Query(None, alias="sortDir", max_length=4),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    """List the caller's tasks with optional filters, one sort key and paging."""
    runtime = get_runtime()
    result = await runtime.tasks.list_tasks(
        principal.user_id,
        completed=completed,
        priority=priority.value if priority else None,
        sort=sort,
        sort_dir=sort_dir,
        page=page,
        limit=limit,
    )
    return TaskListResponse.from_page(result)


@router.get("/tasks/{task_id}", response_model=TaskEnvelope, tags=["tasks"])
async def get_task(task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await runtime.tasks.get_task(principal.user_id, task_id)
    return TaskEnvelope(data=TaskResponse.from_task(task))


@router.post("/tasks", response_model=TaskEnvelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await runtime.tasks.create_task(
        principal.user_id,
        title=body.title,
        description=body.description,
        completed=body.completed,
        due_date=body.due_date,
        priority=body.priority.value,
    )
    return TaskEnvelope(data=TaskResponse.from_task(task))


@router.put("/tasks/{task_id}", response_model=TaskEnvelope, tags=["tasks"])
async def update_task(
    task_id: str,
    body: TaskUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    """Apply a partial update; ``updatedAt`` moves on every successful call.

    Raises:
        403: If the task belongs to another user
        404: If the task does not exist
    """
    runtime = get_runtime()
    task = await runtime.tasks.update_task(principal.user_id, task_id, body.changes())
    return TaskEnvelope(data=TaskResponse.from_task(task))


@router.delete("/tasks/{task_id}", response_model=EmptyResponse, tags=["tasks"])
async def delete_task(task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.tasks.delete_task(principal.user_id, task_id)
    return EmptyResponse()
