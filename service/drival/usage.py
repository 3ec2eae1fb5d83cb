"""
Session usage accounting.

Admission control, heartbeat-driven time accounting, session termination and
reclamation of abandoned sessions. The store is the source of truth; this
service is the only writer.

Time is charged once: each accepted heartbeat subtracts the server-measured
gap since the previous one from the user's remaining allowance. Ending a
session only charges the not-yet-billed tail and folds the session's total
into the period's consumed counter.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from .config import settings
from .models import (
    ActiveSession,
    AdmissionResult,
    HeartbeatResult,
    IssuedSession,
    QuotaWarning,
    SessionValidation,
    TerminationReason,
    UserLimits,
    UserStats,
    UserUsage,
    WarningType,
    usage_period,
)
from .tokens import TokenService

logger = logging.getLogger(__name__)

TerminationListener = Callable[[ActiveSession, TerminationReason], Awaitable[None]]


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


class UsageService:
    """
    Orchestrates session admission, heartbeats and termination.

    Lock order is admission (per user) -> session (per session id) ->
    usage (per user); no path acquires them in any other order.
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        *,
        clock: Optional[Callable[[], int]] = None,
        initial_session_seconds: Optional[int] = None,
        max_session_seconds: Optional[int] = None,
        min_session_seconds: Optional[int] = None,
        warning_threshold_seconds: Optional[int] = None,
        stale_session_seconds: Optional[int] = None,
        period: Optional[str] = None,
    ):
        self.store = store
        self.tokens = tokens
        self.clock = clock or tokens.clock
        self.initial_session_seconds = _pick(initial_session_seconds, settings.INITIAL_SESSION_SECONDS)
        self.max_session_seconds = _pick(max_session_seconds, settings.MAX_SESSION_SECONDS)
        self.min_session_seconds = _pick(min_session_seconds, settings.MIN_SESSION_SECONDS)
        self.warning_threshold_seconds = _pick(warning_threshold_seconds, settings.WARNING_THRESHOLD_SECONDS)
        self.stale_session_seconds = _pick(stale_session_seconds, settings.STALE_SESSION_SECONDS)
        self.period_granularity = period or settings.USAGE_PERIOD

        self._admission_locks = KeyedLocks()
        self._session_locks = KeyedLocks()
        self._usage_locks = KeyedLocks()
        self._listeners: List[TerminationListener] = []

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    def current_period(self) -> str:
        return usage_period(self.clock(), self.period_granularity)

    def _is_stale(self, session: ActiveSession, now: int) -> bool:
        return session.last_heartbeat < now - self.stale_session_seconds * 1000

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def validate_session_creation(self, user_id: str) -> AdmissionResult:
        """Decide whether ``user_id`` may start a session now, and for how long."""
        limits = await self.store.get_user_limits(user_id)
        if not limits.enabled:
            return AdmissionResult(allowed=False, reason="Usage limits disabled for user")

        # Reclaim abandoned sessions here instead of waiting for the sweep.
        now = self.clock()
        live_sessions = []
        for session in await self.store.get_user_active_sessions(user_id):
            if self._is_stale(session, now):
                logger.info(
                    "[USAGE] Reclaiming stale session %s (%ds since last heartbeat)",
                    session.session_id, (now - session.last_heartbeat) // 1000,
                )
                await self.end_session(session.session_id, TerminationReason.STALE)
            else:
                live_sessions.append(session)

        logger.debug(
            "[USAGE] User %s has %d/%d live sessions",
            user_id, len(live_sessions), limits.max_concurrent_sessions,
        )
        if len(live_sessions) >= limits.max_concurrent_sessions:
            return AdmissionResult(allowed=False, reason="Maximum concurrent sessions reached")

        async with self._usage_locks.hold(user_id):
            usage = await self._get_or_init_usage(user_id)
        remaining = usage.session_time_remaining

        if remaining <= 0 or remaining < self.min_session_seconds:
            return AdmissionResult(
                allowed=False,
                reason="No session time remaining",
                session_time_remaining=remaining,
            )

        session_seconds = min(remaining, self.max_session_seconds)
        return AdmissionResult(
            allowed=True,
            quota_remaining=session_seconds,
            session_time_remaining=session_seconds,
            warning_threshold=session_seconds <= self.warning_threshold_seconds,
        )

    async def create_session(self, user_id: str, ip_address: str = "") -> Optional[IssuedSession]:
        """Admit and register a new session; None means the user was denied."""
        async with self._admission_locks.hold(user_id):
            admission = await self.validate_session_creation(user_id)
            if not admission.allowed:
                logger.info("[USAGE] Session denied for %s: %s", user_id, admission.reason)
                return None

            session_id = self._generate_session_id()
            token, session_token = self.tokens.issue(
                user_id, session_id, admission.session_time_remaining, ip_address or None
            )
            await self.store.create_active_session(ActiveSession(
                session_id=session_id,
                user_id=user_id,
                start_time=session_token.issued_at,
                last_heartbeat=session_token.issued_at,
                quota_used_seconds=0,
                token_expiry=session_token.expires_at,
                ip_address=ip_address,
            ))

        logger.info(
            "[USAGE] Session %s created for %s with %ds",
            session_id, user_id, admission.session_time_remaining,
        )
        return IssuedSession(
            token=token,
            session_token=session_token,
            quota_remaining=admission.session_time_remaining,
            warning_threshold=admission.warning_threshold,
        )

    async def validate_session(self, token: str) -> SessionValidation:
        """Check a bearer token against its signature, its expiry and the store."""
        session_token = self.tokens.verify(token)
        if session_token is None:
            # A genuine but expired token still names a session to close out.
            expired = self.tokens.verify_ignoring_expiry(token)
            if expired is not None and self.tokens.is_expired(expired):
                await self.end_session(expired.session_id, TerminationReason.EXPIRED)
            return SessionValidation(valid=False)

        session = await self.store.get_active_session(session_token.session_id)
        if session is None or session.user_id != session_token.user_id:
            return SessionValidation(valid=False)

        if self.tokens.is_expired(session_token):
            await self.end_session(session_token.session_id, TerminationReason.EXPIRED)
            return SessionValidation(valid=False)

        return SessionValidation(
            valid=True,
            session=session,
            remaining=self.tokens.remaining_seconds(session_token),
        )

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    async def process_heartbeat(self, session_id: str, client_timestamp: Optional[int] = None) -> HeartbeatResult:
        """
        Charge the time elapsed since the previous heartbeat.

        The client timestamp only matters for replay checks at the HTTP
        boundary; elapsed time is always measured on the server clock.
        Heartbeats for one session are processed one at a time.
        """
        async with self._session_locks.hold(session_id):
            session = await self.store.get_active_session(session_id)
            if session is None:
                return HeartbeatResult(success=False, session_id=session_id)

            now = self.clock()
            incremental = max(0, (now - session.last_heartbeat) // 1000)
            # Advance by whole billed seconds so sub-second remainders carry over.
            last_heartbeat = session.last_heartbeat + incremental * 1000
            quota_used = session.quota_used_seconds + incremental

            await self.store.update_active_session(
                session_id,
                last_heartbeat=last_heartbeat,
                quota_used_seconds=quota_used,
            )
            user_remaining = await self._charge(session.user_id, incremental)

            token_remaining = max(0, session.token_expiry - now) // 1000
            remaining = min(user_remaining, token_remaining)

            logger.debug(
                "[USAGE] Heartbeat %s: +%ds, used %ds, %ds remaining",
                session_id, incremental, quota_used, remaining,
            )

            warning = None
            if remaining <= 0:
                warning = QuotaWarning(
                    type=WarningType.QUOTA_EXCEEDED,
                    remaining_seconds=0,
                    message="Session time exceeded",
                )
                await self._end_locked(session_id, TerminationReason.QUOTA_EXCEEDED)
            elif remaining <= self.warning_threshold_seconds:
                warning = QuotaWarning(
                    type=WarningType.QUOTA_WARNING,
                    remaining_seconds=remaining,
                    message=_format_warning(remaining),
                )

        return HeartbeatResult(
            success=True,
            session_id=session_id,
            warning=warning,
            session_time_remaining=remaining,
            incremental_seconds=incremental,
        )

    async def _charge(self, user_id: str, seconds: int) -> int:
        async with self._usage_locks.hold(user_id):
            usage = await self._get_or_init_usage(user_id)
            if seconds > 0:
                usage.session_time_remaining = max(0, usage.session_time_remaining - seconds)
                await self.store.upsert_user_usage(usage)
            return usage.session_time_remaining

    async def _get_or_init_usage(self, user_id: str) -> UserUsage:
        """Caller holds the user's usage lock."""
        period = self.current_period()
        usage = await self.store.get_user_usage(user_id, period)
        if usage is None:
            usage = UserUsage(
                user_id=user_id,
                period=period,
                total_seconds_consumed=0,
                session_time_remaining=self.initial_session_seconds,
            )
            await self.store.upsert_user_usage(usage)
            logger.info("[USAGE] Initialized %s usage for %s with %ds", period, user_id, self.initial_session_seconds)
        return usage

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def end_session(self, session_id: str, reason: TerminationReason = TerminationReason.NORMAL) -> bool:
        """End a session and reconcile its usage. Returns False if it was already gone."""
        async with self._session_locks.hold(session_id):
            return await self._end_locked(session_id, reason)

    async def _end_locked(self, session_id: str, reason: TerminationReason) -> bool:
        session = await self.store.get_active_session(session_id)
        if session is None:
            return False

        # Stale sessions stopped proving liveness at their last heartbeat.
        tail = 0
        if reason != TerminationReason.STALE:
            billable_until = min(self.clock(), session.token_expiry)
            tail = max(0, (billable_until - session.last_heartbeat) // 1000)
        used = session.quota_used_seconds + tail

        async with self._usage_locks.hold(session.user_id):
            usage = await self._get_or_init_usage(session.user_id)
            usage.total_seconds_consumed += used
            usage.session_time_remaining = max(0, usage.session_time_remaining - tail)
            await self.store.upsert_user_usage(usage)

        await self.store.delete_active_session(session_id)
        logger.info(
            "[USAGE] Session %s ended (%s). User %s used %ds, %ds remaining",
            session_id, reason.value, session.user_id, used, usage.session_time_remaining,
        )

        session.quota_used_seconds = used
        await self._notify_terminated(session, reason)
        return True

    async def _notify_terminated(self, session: ActiveSession, reason: TerminationReason) -> None:
        for listener in self._listeners:
            try:
                await listener(session, reason)
            except Exception:
                logger.exception("[USAGE] Termination listener failed for %s", session.session_id)

    async def cleanup_expired_sessions(self) -> int:
        """
        Sweep every active session: reclaim stale ones, close expired or
        exhausted ones. One failing session does not stop the sweep.
        """
        now = self.clock()
        ended = 0

        for session in await self.store.get_all_active_sessions():
            try:
                if self._is_stale(session, now):
                    logger.info(
                        "[USAGE] Sweeping stale session %s (%d minutes without heartbeat)",
                        session.session_id, (now - session.last_heartbeat) // 60000,
                    )
                    reason = TerminationReason.STALE
                elif session.token_expiry < now:
                    reason = TerminationReason.EXPIRED
                else:
                    usage = await self.store.get_user_usage(session.user_id, self.current_period())
                    unbilled = max(0, now - session.last_heartbeat) // 1000
                    if usage is None or usage.session_time_remaining - unbilled > 0:
                        continue
                    reason = TerminationReason.QUOTA_EXCEEDED

                if await self.end_session(session.session_id, reason):
                    ended += 1
            except Exception:
                logger.exception("[USAGE] Failed to sweep session %s", session.session_id)

        # Second line of defence for rows the loop above could not close.
        purged = await self.store.cleanup_expired_sessions(now)
        if purged:
            logger.warning("[USAGE] Store purged %d expired session rows", purged)

        if ended:
            logger.info("[USAGE] Sweep ended %d sessions", ended)
        return ended + purged

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def get_user_stats(self, user_id: str) -> UserStats:
        usage, limits, sessions = await asyncio.gather(
            self.store.get_user_usage(user_id, self.current_period()),
            self.store.get_user_limits(user_id),
            self.store.get_user_active_sessions(user_id),
        )
        quota_remaining = usage.session_time_remaining if usage else self.initial_session_seconds
        return UserStats(
            user_id=user_id,
            usage=usage,
            limits=limits,
            active_sessions=sessions,
            quota_remaining=quota_remaining,
        )

    async def update_user_limits(
        self,
        user_id: str,
        enabled: Optional[bool] = None,
        max_concurrent_sessions: Optional[int] = None,
    ) -> UserLimits:
        limits = await self.store.get_user_limits(user_id)
        if enabled is not None:
            limits.enabled = enabled
        if max_concurrent_sessions is not None:
            if max_concurrent_sessions < 0:
                raise ValueError("max_concurrent_sessions must not be negative")
            limits.max_concurrent_sessions = max_concurrent_sessions
        await self.store.set_user_limits(limits)
        logger.info("[USAGE] Limits for %s set to %s", user_id, limits)
        return limits

    async def force_end_user_sessions(self, user_id: str) -> int:
        ended = 0
        for session in await self.store.get_user_active_sessions(user_id):
            if await self.end_session(session.session_id, TerminationReason.ADMIN):
                ended += 1
        return ended

    async def reset_usage(self, user_id: str) -> UserUsage:
        """Restore the current period's allowance. The only way remaining time goes up."""
        async with self._usage_locks.hold(user_id):
            usage = await self._get_or_init_usage(user_id)
            usage.session_time_remaining = self.initial_session_seconds
            await self.store.upsert_user_usage(usage)
        logger.info("[USAGE] Reset %s allowance for %s", usage.period, user_id)
        return usage

    def _generate_session_id(self) -> str:
        return f"session_{self.clock()}_{uuid.uuid4().hex[:9]}"


def _pick(value, default):
    return default if value is None else value


def _format_warning(remaining: int) -> str:
    if remaining >= 60:
        minutes = remaining // 60
        return f"Session will end in {minutes} minute{'s' if minutes != 1 else ''}"
    return f"Session will end in {remaining} seconds"
