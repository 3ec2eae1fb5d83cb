"""
Session and heartbeat endpoints used by the web and mobile clients.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from .deps import Services, get_services, with_store_timeout
from .errors import (
    AdmissionDenied,
    InvalidCredential,
    QuotaExceeded,
    ReplayRejected,
    SessionNotFound,
    UpstreamError,
)
from .models import TerminationReason
from .schemas import EndSessionRequest, HeartbeatRequest, SessionRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["usage"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


@router.post("/session")
async def create_session(body: SessionRequest, request: Request, services: Services = Depends(get_services)):
    """
    Admit a new conversation and mint its credentials.

    Returns an ephemeral Realtime API secret (never the server key) plus the
    signed session token the client must present on every heartbeat.
    """
    ip_address = _client_ip(request)
    usage = services.usage

    admission = await with_store_timeout(services, usage.validate_session_creation(body.user_id))
    if not admission.allowed:
        raise AdmissionDenied(admission.reason, admission.quota_remaining, admission.session_time_remaining)

    issued = await with_store_timeout(services, usage.create_session(body.user_id, ip_address))
    if issued is None:
        raise AdmissionDenied("Session admission changed, request a new session")

    session_token = issued.session_token
    try:
        credential = await services.broker.create_credential()
    except UpstreamError:
        # Nothing was used yet; release the concurrency slot.
        await usage.end_session(session_token.session_id, TerminationReason.NORMAL)
        raise

    return {
        "apiKey": credential.client_secret,
        "sessionId": session_token.session_id,
        "sessionToken": issued.token,
        "heartbeatToken": services.tokens.issue_heartbeat_token(session_token.session_id, session_token.user_id),
        "quotaRemaining": issued.quota_remaining,
        "sessionTimeLimit": issued.quota_remaining,
        "warningThreshold": issued.warning_threshold,
        "expiresAt": session_token.expires_at,
    }


@router.post("/heartbeat")
async def heartbeat(body: HeartbeatRequest, services: Services = Depends(get_services)):
    """
    Accept a liveness signal and charge the time since the previous one.

    The client timestamp is only checked against the replay window, before
    any state is read or written. Each accepted heartbeat returns a fresh
    heartbeat token for the next tool-call heartbeat.
    """
    usage = services.usage
    skew_ms = abs(usage.clock() - body.timestamp)
    if skew_ms > services.heartbeat_tolerance_seconds * 1000:
        logger.warning("[HEARTBEAT] Rejected timestamp %dms away from server time", skew_ms)
        raise ReplayRejected()

    if body.session_token:
        token_ok = services.tokens.verify(body.session_token) is not None
        # Also closes out the session behind a genuine but expired token.
        validation = await with_store_timeout(services, usage.validate_session(body.session_token))
        if not validation.valid:
            raise SessionNotFound() if token_ok else InvalidCredential()
        session_id = validation.session.session_id
        user_id = validation.session.user_id
    else:
        claims = services.tokens.verify_heartbeat_token(body.heartbeat_token)
        if claims is None:
            raise InvalidCredential("Invalid or expired heartbeat token")
        session_id = claims.session_id
        user_id = claims.user_id

    result = await with_store_timeout(services, usage.process_heartbeat(session_id, int(body.timestamp)))
    if not result.success:
        raise SessionNotFound()

    warnings = [result.warning] if result.warning else []
    await services.monitor.update_session_quota(session_id, result.session_time_remaining, warnings)

    if result.exceeded:
        raise QuotaExceeded(session_id, result.warning.remaining_seconds)

    return {
        "success": True,
        "sessionId": session_id,
        "sessionTimeRemaining": result.session_time_remaining,
        "warning": result.warning.to_dict() if result.warning else None,
        "heartbeatToken": services.tokens.issue_heartbeat_token(session_id, user_id),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/session/end")
async def end_session(body: EndSessionRequest, services: Services = Depends(get_services)):
    """Voluntarily end a session. Ending an already-ended session is not an error."""
    session_token = services.tokens.verify_ignoring_expiry(body.session_token)
    if session_token is None:
        raise InvalidCredential()

    ended = await with_store_timeout(
        services, services.usage.end_session(session_token.session_id, TerminationReason.NORMAL)
    )
    return {"success": True, "sessionId": session_token.session_id, "ended": ended}


@router.get("/usage/me")
async def my_usage(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidCredential("Missing or invalid authorization header")

    token = authorization[len("Bearer "):]
    if not services.tokens.is_valid_format(token):
        raise InvalidCredential("Invalid token format")

    validation = await with_store_timeout(services, services.usage.validate_session(token))
    if not validation.valid:
        raise InvalidCredential()

    stats = await with_store_timeout(services, services.usage.get_user_stats(validation.session.user_id))
    body = stats.to_dict()
    body["sessionId"] = validation.session.session_id
    body["sessionRemaining"] = validation.remaining
    return body
