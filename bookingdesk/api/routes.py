from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from bookingdesk.api.schemas import (
    AdminAccountResponse,
    AdminCreateRequest,
    AdminDeleteResponse,
    AdminListResponse,
    BookingViewResponse,
    EnrollmentResponse,
    Envelope,
    LoginRequest,
    LoginStateResponse,
    MFACodeRequest,
    MFAResetResponse,
    SiteContentResponse,
)
from bookingdesk.logging import get_logger
from bookingdesk.service.admin import AdminAccount
from bookingdesk.service.bookings import BookingView
from bookingdesk.service.login_flow import LoginFlow
from bookingdesk.service.runtime import get_runtime
from bookingdesk.storage.models import ROLE_ADMIN

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _flow_state(flow: LoginFlow) -> LoginStateResponse:
    ctx = flow.context
    enrollment = None
    if flow.enrollment is not None:
        enrollment = EnrollmentResponse(
            factor_id=flow.enrollment.factor_id,
            secret=flow.enrollment.secret,
            qr_payload=flow.enrollment.qr_payload,
        )
    return LoginStateResponse(
        flow_id=flow.id,
        step=flow.step.value,
        session_id=flow.session_id,
        user_id=ctx.user_id if ctx else None,
        email=ctx.email if ctx else None,
        roles=sorted(ctx.roles) if ctx else [],
        enrollment=enrollment,
        error=flow.last_error,
    )


def _view_response(view: BookingView) -> BookingViewResponse:
    return BookingViewResponse(**view.to_dict())


def _account_response(account: AdminAccount) -> AdminAccountResponse:
    return AdminAccountResponse(
        user_id=account.user_id,
        email=account.email,
        role=account.role,
        created_at=account.created_at,
        phone_number=account.phone_number,
        is_mfa_enabled=account.is_mfa_enabled,
        email_confirmed=account.email_confirmed,
    )


async def get_flow(
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> LoginFlow:
    runtime = get_runtime()
    flow = runtime.logins.get(session_id)
    if flow is None:
        raise _http_error("unauthorized", "no login in progress for this session", status_code=401)
    return flow


async def get_console_flow(
    flow: LoginFlow = Depends(get_flow),
) -> LoginFlow:
    """Authenticated flow whose session still holds a console role."""
    runtime = get_runtime()
    await flow.revalidate()
    await runtime.auth.authorize(flow.session_id, ROLE_ADMIN)
    return flow


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Submit credentials and start a console login.

    The returned ``step`` tells the client what comes next: ``authenticated``,
    ``awaiting_mfa_verify`` or ``awaiting_mfa_enroll`` (with the enrollment
    secret and otpauth URI to render).
    """
    runtime = get_runtime()
    flow = await runtime.logins.start(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=request.client.host if request.client else None,
    )
    logger.info("login_flow_started", flow_id=flow.id, step=flow.step.value)
    return Envelope(status="ok", data=_flow_state(flow))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MFACodeRequest, flow: LoginFlow = Depends(get_flow)):
    await flow.verify_mfa(body.code)
    return Envelope(status="ok", data=_flow_state(flow))


@router.post("/auth/mfa/enroll/verify", response_model=Envelope, tags=["auth"])
async def verify_enrollment(body: MFACodeRequest, flow: LoginFlow = Depends(get_flow)):
    await flow.verify_enrollment(body.code)
    return Envelope(status="ok", data=_flow_state(flow))


@router.post("/auth/abandon", response_model=Envelope, tags=["auth"])
async def abandon_login(flow: LoginFlow = Depends(get_flow)):
    await flow.abandon()
    return Envelope(status="ok", data=_flow_state(flow))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(session_id: Optional[str] = Header(None, convert_underscores=False)):
    runtime = get_runtime()
    if not session_id:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    flow = runtime.logins.get(session_id)
    if flow is not None:
        await flow.sign_out()
    else:
        await runtime.auth.sign_out(session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(flow: LoginFlow = Depends(get_flow)):
    state = _flow_state(flow)
    if state.step == "authenticated":
        await flow.revalidate()
        state = _flow_state(flow)
    return Envelope(status="ok", data=state)


@router.get("/console/bookings", response_model=Envelope, tags=["console"])
async def console_bookings(flow: LoginFlow = Depends(get_console_flow)):
    runtime = get_runtime()
    view = await runtime.consoles.shell_for(flow).view()
    return Envelope(status="ok", data=_view_response(view))


@router.post("/console/bookings/refetch", response_model=Envelope, tags=["console"])
async def console_refetch(flow: LoginFlow = Depends(get_console_flow)):
    runtime = get_runtime()
    view = await runtime.consoles.shell_for(flow).refetch()
    return Envelope(status="ok", data=_view_response(view))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    accounts = await runtime.admin.list_admins(session_id)
    return Envelope(
        status="ok",
        data=AdminListResponse(items=[_account_response(a) for a in accounts]),
    )


@router.post("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_create_user(
    body: AdminCreateRequest,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    account = await runtime.admin.create_admin(
        session_id,
        email=body.email,
        password=body.password,
        role=body.role,
        phone_number=body.phone_number,
    )
    return Envelope(status="ok", data=_account_response(account))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64),
    delete_user: bool = Query(False, description="Also delete the identity"),
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    result = await runtime.admin.delete_admin(session_id, user_id, delete_user=delete_user)
    return Envelope(status="ok", data=AdminDeleteResponse(**result))


@router.post("/admin/users/{user_id}/mfa/reset", response_model=Envelope, tags=["admin"])
async def admin_reset_mfa(
    user_id: str = Path(..., max_length=64),
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    removed = await runtime.admin.reset_user_mfa(session_id, user_id)
    return Envelope(
        status="ok", data=MFAResetResponse(user_id=user_id, factors_removed=removed)
    )


@router.get("/site/{resource}", response_model=Envelope, tags=["site"])
async def site_content(
    resource: str = Path(..., max_length=32),
    force: bool = Query(False, description="Bypass the freshness window"),
):
    runtime = get_runtime()
    items = await runtime.site_data.get(resource, force=force)
    return Envelope(status="ok", data=SiteContentResponse(resource=resource, items=items))
