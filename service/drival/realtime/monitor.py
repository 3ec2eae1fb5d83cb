"""
Quota push channel.

Each live session may hold one WebSocket on which the server pushes quota
updates, graduated warnings and termination notices. The registry kept here
is a cache: after a restart clients reconnect and resync with a
``status_request``; the usage store stays authoritative.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..config import settings
from ..errors import UsageError
from ..models import (
    TERMINATION_MESSAGES,
    ActiveSession,
    QuotaWarning,
    TerminationReason,
    WarningType,
)
from ..tokens import TokenService
from ..usage import UsageService

logger = logging.getLogger(__name__)

WARNING_THRESHOLDS = (300, 180, 60, 30, 10)

# WebSocket close codes
CLOSE_INTERNAL_ERROR = 4000
CLOSE_MISSING_TOKEN = 4001
CLOSE_INVALID_TOKEN = 4002
CLOSE_SESSION_NOT_FOUND = 4003
CLOSE_TERMINATED = 4004
CLOSE_IDLE_TIMEOUT = 4005
CLOSE_SHUTDOWN = 4006
CLOSE_REPLACED = 4007


@dataclass
class MonitoredSession:
    session_id: str
    user_id: str
    websocket: WebSocket
    last_seen: int
    quota_remaining: int
    warnings_sent: Set[int] = field(default_factory=set)


class ConnectionMonitor:
    """Registry of push channels keyed by session id."""

    def __init__(
        self,
        usage: UsageService,
        tokens: TokenService,
        *,
        idle_timeout_seconds: Optional[float] = None,
        close_grace_seconds: Optional[float] = None,
        thresholds: Iterable[int] = WARNING_THRESHOLDS,
    ):
        self.usage = usage
        self.tokens = tokens
        self.clock = usage.clock
        self.idle_timeout_seconds = (
            settings.MONITOR_IDLE_TIMEOUT_SECONDS if idle_timeout_seconds is None else idle_timeout_seconds
        )
        self.close_grace_seconds = (
            settings.MONITOR_CLOSE_GRACE_SECONDS if close_grace_seconds is None else close_grace_seconds
        )
        self.thresholds = tuple(sorted(thresholds))
        self.sessions: Dict[str, MonitoredSession] = {}
        self._pending_closes: Set[asyncio.Task] = set()

        usage.add_termination_listener(self._on_session_ended)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_connection(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Authenticate an accepted socket, register it and serve it until it closes."""
        if not token:
            await websocket.close(code=CLOSE_MISSING_TOKEN, reason="Missing session token")
            return

        session_token = self.tokens.verify(token)
        if session_token is None:
            await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid session token")
            return

        try:
            validation = await self.usage.validate_session(token)
        except UsageError as e:
            logger.error("[MONITOR] Could not validate session %s: %s", session_token.session_id, e)
            await websocket.close(code=CLOSE_INTERNAL_ERROR, reason="Internal server error")
            return

        if not validation.valid:
            await websocket.close(code=CLOSE_SESSION_NOT_FOUND, reason="Session not found or expired")
            return

        session_id = session_token.session_id
        previous = self.sessions.get(session_id)
        if previous is not None:
            await self._close(previous.websocket, CLOSE_REPLACED, "Replaced by a newer connection")

        monitored = MonitoredSession(
            session_id=session_id,
            user_id=session_token.user_id,
            websocket=websocket,
            last_seen=self.clock(),
            quota_remaining=validation.remaining,
        )
        self.sessions[session_id] = monitored
        logger.info("[MONITOR] Session %s connected", session_id)

        await self._send(websocket, {
            "type": "connected",
            "sessionId": session_id,
            "quotaRemaining": monitored.quota_remaining,
        })

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("[MONITOR] Ignoring malformed message on %s", session_id)
                    continue
                if isinstance(message, dict):
                    await self.handle_message(session_id, message)
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            current = self.sessions.get(session_id)
            if current is not None and current.websocket is websocket:
                del self.sessions[session_id]
            logger.info("[MONITOR] Session %s disconnected", session_id)

    async def handle_message(self, session_id: str, message: dict) -> None:
        monitored = self.sessions.get(session_id)
        if monitored is None:
            return

        message_type = message.get("type")
        if message_type == "ping":
            monitored.last_seen = self.clock()
            await self._send(monitored.websocket, {"type": "pong"})
        elif message_type == "status_request":
            await self.send_status(monitored)

    async def send_status(self, monitored: MonitoredSession) -> None:
        try:
            stats = await self.usage.get_user_stats(monitored.user_id)
        except UsageError as e:
            logger.error("[MONITOR] Could not load status for %s: %s", monitored.session_id, e)
            return

        monitored.quota_remaining = stats.quota_remaining
        await self._send(monitored.websocket, {
            "type": "status",
            "sessionId": monitored.session_id,
            "quotaRemaining": stats.quota_remaining,
            "usage": stats.usage.to_dict() if stats.usage else None,
        })

    # ------------------------------------------------------------------
    # Pushes from the accounting path
    # ------------------------------------------------------------------

    async def update_session_quota(self, session_id: str, quota_remaining: int, warnings: Iterable[QuotaWarning]) -> None:
        """Mirror a heartbeat result to the session's channel, each threshold at most once."""
        monitored = self.sessions.get(session_id)
        if monitored is None:
            return

        monitored.quota_remaining = quota_remaining
        monitored.last_seen = self.clock()

        await self._send(monitored.websocket, {
            "type": "quota_update",
            "sessionId": session_id,
            "quotaRemaining": quota_remaining,
        })

        for warning in warnings:
            threshold = self._threshold_for(warning)
            if threshold in monitored.warnings_sent:
                continue
            monitored.warnings_sent.add(threshold)

            await self._send(monitored.websocket, {
                "type": "quota_warning",
                "sessionId": session_id,
                "warning": warning.to_dict(),
            })
            logger.info("[MONITOR] Sent %s to %s: %s", warning.type.value, session_id, warning.message)

    def _threshold_for(self, warning: QuotaWarning) -> int:
        if warning.type == WarningType.QUOTA_EXCEEDED:
            return 0
        for threshold in self.thresholds:
            if warning.remaining_seconds <= threshold:
                return threshold
        return warning.remaining_seconds

    async def terminate_session(
        self,
        session_id: str,
        message: str,
        reason: TerminationReason = TerminationReason.QUOTA_EXCEEDED,
    ) -> bool:
        """Push a termination notice, then close the channel after a grace delay."""
        monitored = self.sessions.pop(session_id, None)
        if monitored is None:
            return False

        logger.info("[MONITOR] Terminating session %s: %s", session_id, message)
        await self._send(monitored.websocket, {
            "type": "session_terminated",
            "sessionId": session_id,
            "reason": message,
            "code": reason.value,
        })

        task = asyncio.create_task(self._close_later(monitored.websocket, message))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)
        return True

    async def _on_session_ended(self, session: ActiveSession, reason: TerminationReason) -> None:
        await self.terminate_session(session.session_id, TERMINATION_MESSAGES[reason], reason)

    async def _close_later(self, websocket: WebSocket, reason: str) -> None:
        await asyncio.sleep(self.close_grace_seconds)
        await self._close(websocket, CLOSE_TERMINATED, reason)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def reap_idle_connections(self) -> int:
        """Close channels that have not pinged within the idle timeout."""
        cutoff = self.clock() - int(self.idle_timeout_seconds * 1000)
        idle = [m for m in self.sessions.values() if m.last_seen < cutoff]

        for monitored in idle:
            logger.info("[MONITOR] Closing idle channel for session %s", monitored.session_id)
            self.sessions.pop(monitored.session_id, None)
            await self._close(monitored.websocket, CLOSE_IDLE_TIMEOUT, "Connection timeout")
        return len(idle)

    async def shutdown(self) -> None:
        logger.info("[MONITOR] Shutting down %d channels", len(self.sessions))
        for task in list(self._pending_closes):
            task.cancel()

        monitored_sessions = list(self.sessions.values())
        self.sessions.clear()
        for monitored in monitored_sessions:
            await self._send(monitored.websocket, {
                "type": "server_shutdown",
                "message": "Server is shutting down",
            })
            await self._close(monitored.websocket, CLOSE_SHUTDOWN, "Server shutdown")

    def active_count(self) -> int:
        return len(self.sessions)

    def session_info(self, session_id: str) -> Optional[dict]:
        monitored = self.sessions.get(session_id)
        if monitored is None:
            return None
        return {
            "sessionId": monitored.session_id,
            "userId": monitored.user_id,
            "quotaRemaining": monitored.quota_remaining,
            "lastSeen": monitored.last_seen,
            "warningsSent": sorted(monitored.warnings_sent),
            "connected": monitored.websocket.client_state == WebSocketState.CONNECTED,
        }

    # ------------------------------------------------------------------

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        message.setdefault("timestamp", self.clock())
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning("[MONITOR] Error sending %s: %s", message.get("type"), e)

    async def _close(self, websocket: WebSocket, code: int, reason: str) -> None:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning("[MONITOR] Error closing channel: %s", e)
