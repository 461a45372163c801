# backend/solvit/schemas/session.py
"""Session access and attendance schemas."""

from datetime import datetime
from typing import Optional

from .base import StandardizedModel


class JoinIntentResponse(StandardizedModel):
    booking_id: str
    role: str
    token: str
    expires_in: int
    redirect_url: str


class HeartbeatResponse(StandardizedModel):
    rate_limited: bool
    heartbeat_count: int
    timestamp: datetime
    next_allowed_at: Optional[datetime] = None


class LeaveResponse(StandardizedModel):
    booking_id: str
    left_at: datetime


class SessionWindow(StandardizedModel):
    can_join: bool
    is_active: bool
    seconds_until_start: int
    seconds_until_end: int


class SessionDetailsResponse(StandardizedModel):
    booking_id: str
    user_role: str
    status: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    timezone: str
    session_window: SessionWindow


class RoleAttendance(StandardizedModel):
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    total_heartbeats: int = 0
    estimated_minutes: Optional[int] = None
    present: Optional[bool] = None


class AttendanceSummaryResponse(StandardizedModel):
    booking_id: str
    status: str
    client: RoleAttendance
    counselor: RoleAttendance
    session_started_at: Optional[datetime] = None
    session_ended_at: Optional[datetime] = None
    auto_confirm_at: Optional[datetime] = None
    can_dispute: bool
