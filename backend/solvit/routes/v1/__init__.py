"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import bookings, payments, sessions

__all__ = ["bookings", "payments", "sessions"]
