"""
Domain errors raised by the booking engine.

Each error knows the HTTP status it maps to so the API layer can convert it
without a lookup table. Transient failures (``SystemBusy``) are the only ones a
caller should retry unchanged.
"""

from typing import Any

from fastapi import HTTPException, status


class DomainError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def headers(self) -> dict[str, str] | None:
        return None

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
            headers=self.headers(),
        )


class ValidationFailed(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTimeFormat(ValidationFailed):
    pass


class InvalidStatus(ValidationFailed):
    pass


class NotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class SlotUnavailable(DomainError):
    """The requested interval overlaps an occupying booking or time-off."""

    status_code = status.HTTP_409_CONFLICT


class StatusConflict(DomainError):
    status_code = status.HTTP_409_CONFLICT


class SystemBusy(DomainError):
    """The booking key could not be locked in time. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str = "System busy, please retry",
        retry_after_seconds: int = 1,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(1, int(retry_after_seconds))

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}
