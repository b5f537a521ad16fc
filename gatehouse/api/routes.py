from __future__ import annotations

from typing import Optional, TypeVar

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from gatehouse.api.schemas import (
    AuthorizationUrlResponse,
    EmailConfirmationRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    NewPasswordRequest,
    PasswordResetRequest,
    RegisterRequest,
    UpdateProfileRequest,
    UserResponse,
)
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthResult, AuthState
from gatehouse.service.errors import (
    AuthenticationError,
    BadRequestError,
    ServerError,
    ServiceError,
)
from gatehouse.service.outcome import Outcome
from gatehouse.service.runtime import get_runtime
from gatehouse.service.session import SessionHandle
from gatehouse.storage.errors import SessionBackendError

logger = get_logger(__name__)

router = APIRouter()

T = TypeVar("T")


def _unwrap(outcome: Outcome[T]) -> T:
    if not outcome.ok:
        raise ServiceError.from_failure(outcome.failure)
    return outcome.value


def _session_handle(request: Request) -> SessionHandle:
    runtime = get_runtime()
    return runtime.session_handle(request.cookies.get(runtime.settings.session_name))


def _apply_session_cookie(response: Response, handle: SessionHandle) -> None:
    settings = get_runtime().settings
    if not handle.session:
        return
    response.set_cookie(
        settings.session_name,
        handle.session.id,
        httponly=True,
        secure=settings.session_secure,
        samesite="lax",
        expires=handle.session.expires_at,
        domain=settings.session_domain,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_name,
        path="/",
        domain=settings.session_domain,
        secure=settings.session_secure,
        samesite="lax",
    )


def _auth_payload(result: AuthResult) -> LoginResponse:
    return LoginResponse(
        state=result.state.value,
        user=UserResponse.from_user(result.user) if result.user else None,
        message=result.message,
    )


async def get_current_user_id(request: Request) -> str:
    """Resolve the session cookie to a user id or fail with 401."""
    handle = _session_handle(request)
    try:
        session = await handle.load()
    except SessionBackendError as exc:
        logger.error("session_lookup_failed", error=str(exc))
        raise ServerError("session backend unavailable") from exc
    if not session:
        raise AuthenticationError(
            "You are not signed in. Please sign in to access this page."
        )
    return session.user_id


@router.post(
    "/auth/register", response_model=Envelope, status_code=202, tags=["auth"]
)
async def register(body: RegisterRequest):
    """Create a credentials account and send the confirmation email.

    No session is established; the user signs in after confirming.
    """
    runtime = get_runtime()
    result = _unwrap(
        await runtime.auth.register(body.email, body.password, body.name)
    )
    return Envelope(status="ok", data=MessageResponse(message=result.message or ""))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login with optional two-factor code.

    Without a code, an account with 2FA enabled answers with
    ``state=pending_two_factor`` and mails a code.
    """
    runtime = get_runtime()
    handle = _session_handle(request)
    result = _unwrap(
        await runtime.auth.login(body.email, body.password, body.code, session=handle)
    )
    if result.state is AuthState.AUTHENTICATED:
        _apply_session_cookie(response, handle)
    return Envelope(status="ok", data=_auth_payload(result))


@router.get("/auth/oauth/connect/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_connect(provider: str = Path(..., max_length=32)):
    runtime = get_runtime()
    url = _unwrap(runtime.auth.oauth_authorization_url(provider))
    return Envelope(status="ok", data=AuthorizationUrlResponse(url=url))


@router.get("/auth/oauth/callback/{provider}", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
):
    """Finish the provider redirect and send the browser to the dashboard."""
    if not code:
        raise BadRequestError("No authorization code was provided.")
    runtime = get_runtime()
    handle = _session_handle(request)
    _unwrap(await runtime.auth.oauth_callback(provider, code, session=handle))
    redirect = RedirectResponse(
        f"{runtime.settings.allowed_origin}/dashboard/settings", status_code=302
    )
    _apply_session_cookie(redirect, handle)
    return redirect


@router.post("/auth/email-confirmation", response_model=Envelope, tags=["auth"])
async def confirm_email(
    body: EmailConfirmationRequest, request: Request, response: Response
):
    runtime = get_runtime()
    handle = _session_handle(request)
    result = _unwrap(await runtime.auth.confirm_email(body.token, session=handle))
    _apply_session_cookie(response, handle)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/password-recovery/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    sent = _unwrap(await runtime.auth.request_password_reset(body.email))
    return Envelope(status="ok", data=sent)


@router.post(
    "/auth/password-recovery/new/{token}", response_model=Envelope, tags=["auth"]
)
async def complete_password_reset(
    body: NewPasswordRequest, token: str = Path(..., max_length=128)
):
    runtime = get_runtime()
    changed = _unwrap(await runtime.auth.complete_password_reset(token, body.password))
    return Envelope(status="ok", data=changed)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    handle = _session_handle(request)
    _unwrap(await runtime.auth.logout(handle))
    _clear_session_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="Signed out."))


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(user_id: str = Depends(get_current_user_id)):
    runtime = get_runtime()
    user = _unwrap(runtime.users.get_profile(user_id))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, user_id: str = Depends(get_current_user_id)
):
    runtime = get_runtime()
    user = _unwrap(
        runtime.users.update_profile(
            user_id,
            name=body.name,
            email=body.email,
            is_two_factor_enabled=body.is_two_factor_enabled,
        )
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))
