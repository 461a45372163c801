# backend/solvit/core/exceptions.py
"""
Domain-specific exceptions for the Solvit booking platform.

Services raise these; routes convert them with ``to_http_exception`` so the
HTTP layer never needs to know which business rule failed.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request data fails business validation."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when the current state of a record forbids the change."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    status_code = HTTP_422_UNPROCESSABLE


class UnauthorizedException(DomainException):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when the caller is not a party to the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails for infrastructure reasons."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class SlotUnavailableException(ConflictException):
    """Raised when a slot is no longer available to reserve."""

    def __init__(self, slot_id: str, current_status: Optional[str] = None):
        super().__init__(
            message="This slot is no longer available",
            code="SLOT_UNAVAILABLE",
            details={"slot_id": slot_id, "current_status": current_status},
        )


class CancellationWindowException(BusinessRuleException):
    """Raised when a cancel or reschedule is attempted inside the notice window."""

    def __init__(self, action: str, required_hours: int, hours_until_start: float):
        super().__init__(
            message=(
                f"Bookings can only be {action} at least {required_hours} hours before the session"
            ),
            code="CANCELLATION_WINDOW_CLOSED",
            details={
                "required_hours": required_hours,
                "hours_until_start": round(hours_until_start, 2),
            },
        )


class SessionWindowException(ValidationException):
    """Raised when a session action happens outside its allowed time window."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="SESSION_WINDOW_CLOSED", details=details)


class JoinTokenError(UnauthorizedException):
    def __init__(self, message: str = "Invalid or expired join token"):
        super().__init__(message=message, code="INVALID_JOIN_TOKEN")


class IdempotencyInProgressException(ConflictException):
    """Raised when a request with the same idempotency key is still processing."""

    def __init__(self, key: str):
        super().__init__(
            message="A request with this idempotency key is already being processed",
            code="IDEMPOTENCY_IN_PROGRESS",
            details={"key": key},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as connection issues, query failures, or constraint violations.
    """
