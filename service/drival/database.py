import asyncio
import logging
import os
import sqlite3
from typing import List, Optional

from .config import settings
from .errors import StorageFailure
from .models import ActiveSession, UserLimits, UserUsage

logger = logging.getLogger(__name__)

SESSION_COLUMNS = {
    "last_heartbeat": "last_heartbeat",
    "quota_used_seconds": "quota_used",
    "token_expiry": "token_expiry",
    "ip_address": "ip_address",
}


class SQLiteUsageStore:
    """
    Usage store on a local SQLite file.

    Every call opens its own connection and runs in a worker thread, so the
    event loop never blocks on disk I/O. Driver errors surface as StorageFailure.
    """

    def __init__(self, path: Optional[str] = None, default_max_concurrent: Optional[int] = None):
        self.path = path or settings.DATABASE_PATH
        self.default_max_concurrent = default_max_concurrent or settings.MAX_CONCURRENT_SESSIONS

    def get_db_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError) as e:
            logger.error("[STORE] SQLite operation %s failed: %s", func.__name__, e)
            raise StorageFailure() from e

    async def initialize(self) -> None:
        await self._run(self._init_db)
        logger.info("[STORE] SQLite usage database ready at %s", self.path)

    async def close(self) -> None:
        # Connections are per-call; nothing to release.
        return None

    def _init_db(self):
        """Initialize database schema."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        conn = self.get_db_connection()
        try:
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS user_usage (
                    user_id TEXT NOT NULL,
                    period TEXT NOT NULL,
                    total_seconds INTEGER NOT NULL DEFAULT 0,
                    session_time_remaining INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, period)
                );

                CREATE TABLE IF NOT EXISTS user_limits (
                    user_id TEXT PRIMARY KEY,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    max_concurrent_sessions INTEGER NOT NULL DEFAULT {int(self.default_max_concurrent)}
                );

                CREATE TABLE IF NOT EXISTS active_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    start_time INTEGER NOT NULL,
                    last_heartbeat INTEGER NOT NULL,
                    quota_used INTEGER NOT NULL DEFAULT 0,
                    token_expiry INTEGER NOT NULL,
                    ip_address TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_active_sessions_user ON active_sessions(user_id);
                CREATE INDEX IF NOT EXISTS idx_active_sessions_expiry ON active_sessions(token_expiry);
            """)
            conn.commit()
        finally:
            conn.close()

    # User usage

    async def get_user_usage(self, user_id: str, period: str) -> Optional[UserUsage]:
        return await self._run(self._get_user_usage, user_id, period)

    def _get_user_usage(self, user_id, period):
        conn = self.get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM user_usage WHERE user_id = ? AND period = ?",
                (user_id, period),
            ).fetchone()
        finally:
            conn.close()

        if not row:
            return None
        return UserUsage(
            user_id=row["user_id"],
            period=row["period"],
            total_seconds_consumed=row["total_seconds"],
            session_time_remaining=row["session_time_remaining"],
        )

    async def upsert_user_usage(self, usage: UserUsage) -> None:
        await self._run(self._upsert_user_usage, usage)

    def _upsert_user_usage(self, usage):
        conn = self.get_db_connection()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO user_usage (user_id, period, total_seconds, session_time_remaining)
                VALUES (?, ?, ?, ?)
            """, (usage.user_id, usage.period, usage.total_seconds_consumed, usage.session_time_remaining))
            conn.commit()
        finally:
            conn.close()

    # User limits

    async def get_user_limits(self, user_id: str) -> UserLimits:
        return await self._run(self._get_user_limits, user_id)

    def _get_user_limits(self, user_id):
        conn = self.get_db_connection()
        try:
            row = conn.execute("SELECT * FROM user_limits WHERE user_id = ?", (user_id,)).fetchone()
        finally:
            conn.close()

        if not row:
            return UserLimits(user_id=user_id, max_concurrent_sessions=self.default_max_concurrent)
        return UserLimits(
            user_id=row["user_id"],
            enabled=bool(row["enabled"]),
            max_concurrent_sessions=row["max_concurrent_sessions"],
        )

    async def set_user_limits(self, limits: UserLimits) -> None:
        await self._run(self._set_user_limits, limits)

    def _set_user_limits(self, limits):
        conn = self.get_db_connection()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO user_limits (user_id, enabled, max_concurrent_sessions)
                VALUES (?, ?, ?)
            """, (limits.user_id, 1 if limits.enabled else 0, limits.max_concurrent_sessions))
            conn.commit()
        finally:
            conn.close()

    # Active sessions

    async def create_active_session(self, session: ActiveSession) -> None:
        await self._run(self._create_active_session, session)

    def _create_active_session(self, session):
        conn = self.get_db_connection()
        try:
            conn.execute("""
                INSERT INTO active_sessions
                    (session_id, user_id, start_time, last_heartbeat, quota_used, token_expiry, ip_address)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                session.session_id, session.user_id, session.start_time, session.last_heartbeat,
                session.quota_used_seconds, session.token_expiry, session.ip_address,
            ))
            conn.commit()
        finally:
            conn.close()

    async def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        return await self._run(self._get_active_session, session_id)

    def _get_active_session(self, session_id):
        conn = self.get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM active_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_session(row) if row else None

    async def update_active_session(self, session_id: str, **fields) -> bool:
        unknown = set(fields) - set(SESSION_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        if not fields:
            return False
        return await self._run(self._update_active_session, session_id, fields)

    def _update_active_session(self, session_id, fields):
        set_clause = ", ".join(f"{SESSION_COLUMNS[name]} = ?" for name in fields)
        values = list(fields.values()) + [session_id]

        conn = self.get_db_connection()
        try:
            cursor = conn.execute(
                f"UPDATE active_sessions SET {set_clause} WHERE session_id = ?", values
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def delete_active_session(self, session_id: str) -> bool:
        return await self._run(self._delete_active_session, session_id)

    def _delete_active_session(self, session_id):
        conn = self.get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM active_sessions WHERE session_id = ?", (session_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def get_user_active_sessions(self, user_id: str) -> List[ActiveSession]:
        return await self._run(self._select_sessions, "WHERE user_id = ?", (user_id,))

    async def get_all_active_sessions(self) -> List[ActiveSession]:
        return await self._run(self._select_sessions, "", ())

    def _select_sessions(self, where, params):
        conn = self.get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM active_sessions {where} ORDER BY start_time", params
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_session(row) for row in rows]

    async def cleanup_expired_sessions(self, now_ms: int) -> int:
        return await self._run(self._cleanup_expired_sessions, now_ms)

    def _cleanup_expired_sessions(self, now_ms):
        conn = self.get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM active_sessions WHERE token_expiry < ?", (now_ms,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


def _row_to_session(row) -> ActiveSession:
    return ActiveSession(
        session_id=row["session_id"],
        user_id=row["user_id"],
        start_time=row["start_time"],
        last_heartbeat=row["last_heartbeat"],
        quota_used_seconds=row["quota_used"],
        token_expiry=row["token_expiry"],
        ip_address=row["ip_address"] or "",
    )
