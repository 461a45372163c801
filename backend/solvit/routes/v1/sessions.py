# backend/solvit/routes/v1/sessions.py
"""
Session access routes - API v1

The meeting URL is never handed out directly: a participant first records
a join intent and receives a short-lived token, then follows the redirect
endpoint which verifies the token and forwards to the meeting.

Endpoints:
    GET /{booking_id} - Session details and join window
    POST /{booking_id}/join-intent - Issue a join token
    GET /{booking_id}/redirect - Redeem a join token (303 to the meeting)
    POST /{booking_id}/heartbeat - Presence heartbeat
    POST /{booking_id}/leave - Record leaving the session
    GET /{booking_id}/attendance - Attendance summary
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from ...core.exceptions import DomainException
from ...dependencies import get_attendance_service, get_current_user
from ...models.user import User
from ...schemas.session import (
    AttendanceSummaryResponse,
    HeartbeatResponse,
    JoinIntentResponse,
    LeaveResponse,
    SessionDetailsResponse,
)
from ...services.attendance_service import AttendanceService, RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/{booking_id}", response_model=SessionDetailsResponse)
def get_session_details(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> SessionDetailsResponse:
    try:
        return SessionDetailsResponse(
            **attendance_service.get_session_details(booking_id, current_user.id)
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/join-intent",
    response_model=JoinIntentResponse,
    responses={400: {"description": "Outside the join window or session cancelled"}},
)
def create_join_intent(
    booking_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> JoinIntentResponse:
    try:
        intent = attendance_service.record_join_intent(
            booking_id, current_user.id, _request_context(request)
        )
        return JoinIntentResponse(
            booking_id=intent.booking_id,
            role=intent.role,
            token=intent.token,
            expires_in=intent.expires_in,
            redirect_url=intent.redirect_url,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get(
    "/{booking_id}/redirect",
    status_code=status.HTTP_303_SEE_OTHER,
    response_class=RedirectResponse,
    responses={401: {"description": "Invalid or expired join token"}},
)
def redirect_to_meeting(
    booking_id: str,
    request: Request,
    token: str = Query(..., min_length=1),
    role: Optional[str] = Query(default=None),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> RedirectResponse:
    """Authenticated by the join token alone."""
    try:
        meeting_url = attendance_service.redeem_join_token(
            booking_id, token, role=role, context=_request_context(request)
        )
    except DomainException as e:
        handle_domain_exception(e)
    return RedirectResponse(url=meeting_url, status_code=status.HTTP_303_SEE_OTHER)


@router.post(
    "/{booking_id}/heartbeat",
    response_model=HeartbeatResponse,
    responses={400: {"description": "Session window closed"}},
)
def heartbeat(
    booking_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> HeartbeatResponse:
    try:
        ack = attendance_service.record_heartbeat(
            booking_id, current_user.id, _request_context(request)
        )
        return HeartbeatResponse(
            rate_limited=ack.rate_limited,
            heartbeat_count=ack.heartbeat_count,
            timestamp=ack.timestamp,
            next_allowed_at=ack.next_allowed_at,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/leave", response_model=LeaveResponse)
def leave_session(
    booking_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> LeaveResponse:
    try:
        left_at = attendance_service.mark_left(
            booking_id, current_user.id, _request_context(request)
        )
        return LeaveResponse(booking_id=booking_id, left_at=left_at)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/attendance", response_model=AttendanceSummaryResponse)
def get_attendance_summary(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    attendance_service: AttendanceService = Depends(get_attendance_service),
) -> AttendanceSummaryResponse:
    try:
        return AttendanceSummaryResponse(
            **attendance_service.get_attendance_summary(booking_id, current_user.id)
        )
    except DomainException as e:
        handle_domain_exception(e)
