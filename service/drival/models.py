"""
Usage accounting records.

All timestamps are integer epoch milliseconds; all durations are seconds.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def usage_period(now_ms: int, granularity: str = "month") -> str:
    """Calendar bucket for a timestamp: ``YYYY-MM`` or ``YYYY-MM-DD`` (UTC)."""
    moment = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    if granularity == "day":
        return moment.strftime("%Y-%m-%d")
    return moment.strftime("%Y-%m")


class WarningType(str, Enum):
    QUOTA_WARNING = "QUOTA_WARNING"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


class TerminationReason(str, Enum):
    NORMAL = "NORMAL"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    STALE = "STALE"
    EXPIRED = "EXPIRED"
    ADMIN = "ADMIN"


TERMINATION_MESSAGES = {
    TerminationReason.NORMAL: "Session ended",
    TerminationReason.QUOTA_EXCEEDED: "Quota exceeded",
    TerminationReason.STALE: "Session abandoned (no heartbeat)",
    TerminationReason.EXPIRED: "Session token expired",
    TerminationReason.ADMIN: "Session ended by administrator",
}


@dataclass(frozen=True)
class SessionToken:
    user_id: str
    session_id: str
    quota_remaining_seconds: int
    issued_at: int
    expires_at: int
    ip_address: Optional[str] = None
    nonce: str = ""


@dataclass(frozen=True)
class HeartbeatClaims:
    user_id: str
    session_id: str
    timestamp: int


@dataclass
class ActiveSession:
    session_id: str
    user_id: str
    start_time: int
    last_heartbeat: int
    quota_used_seconds: int = 0
    token_expiry: int = 0
    ip_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserUsage:
    user_id: str
    period: str
    total_seconds_consumed: int = 0
    session_time_remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserLimits:
    user_id: str
    enabled: bool = True
    max_concurrent_sessions: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QuotaWarning:
    type: WarningType
    remaining_seconds: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "remaining": self.remaining_seconds,
            "message": self.message,
        }


@dataclass
class AdmissionResult:
    allowed: bool
    reason: Optional[str] = None
    quota_remaining: int = 0
    session_time_remaining: int = 0
    warning_threshold: bool = False


@dataclass
class IssuedSession:
    token: str
    session_token: SessionToken
    quota_remaining: int
    warning_threshold: bool = False


@dataclass
class SessionValidation:
    valid: bool
    session: Optional[ActiveSession] = None
    remaining: int = 0


@dataclass
class HeartbeatResult:
    success: bool
    session_id: str = ""
    warning: Optional[QuotaWarning] = None
    session_time_remaining: int = 0
    incremental_seconds: int = 0

    @property
    def exceeded(self) -> bool:
        return self.warning is not None and self.warning.type == WarningType.QUOTA_EXCEEDED


@dataclass
class UserStats:
    user_id: str
    usage: Optional[UserUsage]
    limits: UserLimits
    active_sessions: List[ActiveSession] = field(default_factory=list)
    quota_remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "usage": self.usage.to_dict() if self.usage else None,
            "limits": self.limits.to_dict(),
            "activeSessions": [s.to_dict() for s in self.active_sessions],
            "quotaRemaining": self.quota_remaining,
        }
