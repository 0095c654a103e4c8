from __future__ import annotations

from typing import Any


class FleetError(RuntimeError):
    error_kind = "FleetError"

    def __init__(
        self,
        message: str,
        *,
        retriable: bool = False,
        status_code: int | None = None,
        retry_after_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        self.details = details or {}

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "success": False,
            "error_kind": self.error_kind,
            "message": self.message,
        }
        if self.details:
            envelope["details"] = self.details
        return envelope


class AuthError(FleetError):
    error_kind = "AuthError"


class NoCredentials(FleetError):
    error_kind = "NoCredentials"


class RateLimited(FleetError):
    error_kind = "RateLimited"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            retriable=True,
            status_code=status_code,
            retry_after_seconds=retry_after_seconds,
            details=details,
        )


class Transient(FleetError):
    error_kind = "Transient"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            retriable=True,
            status_code=status_code,
            retry_after_seconds=retry_after_seconds,
            details=details,
        )


class Permanent(FleetError):
    error_kind = "Permanent"


class NotFound(Permanent):
    pass


class RiskReject(FleetError):
    error_kind = "RiskReject"

    def __init__(self, message: str, *, code: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"code": code, **(details or {})})
        self.code = code


class NoPrimary(FleetError):
    error_kind = "NoPrimary"


class InvariantViolation(FleetError):
    error_kind = "InvariantViolation"


class QueueFull(FleetError):
    error_kind = "QueueFull"


def classify_http_status(
    status_code: int,
    message: str,
    *,
    retry_after_seconds: int | None = None,
    details: dict[str, Any] | None = None,
) -> FleetError:
    if status_code in {401, 403}:
        return AuthError(message, status_code=status_code, details=details)
    if status_code == 429:
        return RateLimited(
            message,
            status_code=status_code,
            retry_after_seconds=retry_after_seconds,
            details=details,
        )
    if status_code == 408 or status_code >= 500:
        return Transient(
            message,
            status_code=status_code,
            retry_after_seconds=retry_after_seconds,
            details=details,
        )
    return Permanent(message, status_code=status_code, details=details)


def parse_retry_after(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
