"""Attendance domain utilities shared across services and tasks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class PresenceThresholds:
    """OR-combined presence criteria; any one being met marks a party present."""

    minutes: int = 10
    heartbeats: int = 20
    ratio: float = 0.2


@dataclass(frozen=True)
class PresenceResult:
    present: bool
    estimated_minutes: int


def estimate_minutes(total_heartbeats: int, duration_minutes: int) -> int:
    """Heartbeats arrive roughly once a minute; cap the estimate at the session length."""
    return max(0, min(int(total_heartbeats or 0), int(duration_minutes)))


def determine_presence(
    *,
    joined_at: Optional[datetime],
    total_heartbeats: int,
    duration_minutes: int,
    thresholds: PresenceThresholds,
) -> PresenceResult:
    """
    Decide whether a party attended a session.

    A party that never redeemed a join token is absent regardless of
    heartbeats. Otherwise presence holds if estimated minutes reach the
    minute threshold, or the raw heartbeat count reaches its threshold, or
    the estimated minutes cover the configured share of the session.
    """
    minutes = estimate_minutes(total_heartbeats, duration_minutes)
    if joined_at is None:
        return PresenceResult(present=False, estimated_minutes=minutes)

    present = (
        minutes >= thresholds.minutes
        or (total_heartbeats or 0) >= thresholds.heartbeats
        or minutes >= thresholds.ratio * duration_minutes
    )
    return PresenceResult(present=present, estimated_minutes=minutes)
