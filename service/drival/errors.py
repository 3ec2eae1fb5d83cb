"""
Error taxonomy for the usage-metering service.

Every error maps to one HTTP status and a machine-readable code; the app
renders them as ``{"error": message, "code": code, ...extra}``.
"""

from typing import Any, Dict, Optional


class UsageError(Exception):
    status_code = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class AdmissionDenied(UsageError):
    status_code = 429
    code = "ADMISSION_DENIED"

    def __init__(self, reason: str, quota_remaining: int = 0, session_time_remaining: int = 0):
        super().__init__(
            "Session creation denied",
            {
                "reason": reason,
                "quotaRemaining": quota_remaining,
                "sessionTimeRemaining": session_time_remaining,
            },
        )
        self.reason = reason


class InvalidCredential(UsageError):
    """Bad signature, wrong audience or expired; the client must request a new session."""

    status_code = 401
    code = "INVALID_CREDENTIAL"

    def __init__(self, message: str = "Invalid or expired session token"):
        super().__init__(message, {"status": "session_terminated", "action": "REQUIRE_NEW_SESSION"})


class SessionNotFound(InvalidCredential):
    code = "SESSION_NOT_FOUND"

    def __init__(self, message: str = "Session not found or expired"):
        super().__init__(message)


class ReplayRejected(UsageError):
    status_code = 400
    code = "REPLAY_REJECTED"

    def __init__(self, message: str = "Timestamp too old or too far in future"):
        super().__init__(message)


class QuotaExceeded(UsageError):
    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, session_id: str, remaining: int = 0):
        super().__init__(
            "Session quota exceeded",
            {"status": "session_terminated", "sessionId": session_id, "remaining": remaining},
        )


class StorageFailure(UsageError):
    status_code = 500
    code = "STORAGE_FAILURE"

    def __init__(self, message: str = "Usage store unavailable"):
        super().__init__(message)


class UpstreamError(UsageError):
    status_code = 502
    code = "UPSTREAM_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None, upstream_status: Optional[int] = None):
        super().__init__(message, {"upstreamStatus": upstream_status} if upstream_status else None)
        if status_code is not None:
            self.status_code = status_code
