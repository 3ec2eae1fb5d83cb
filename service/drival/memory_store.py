"""
In-process usage store, optionally mirrored to a JSON file.

Used when SQLite is not wanted (``USAGE_BACKEND=memory``) and by the tests.
Every call yields to the event loop once, like a real I/O round trip, so
callers see the same interleavings they would against a database.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .config import settings
from .errors import StorageFailure
from .database import SESSION_COLUMNS
from .models import ActiveSession, UserLimits, UserUsage

logger = logging.getLogger(__name__)


class MemoryUsageStore:

    def __init__(self, json_path: Optional[str] = None, default_max_concurrent: Optional[int] = None):
        self.json_path = json_path
        self.default_max_concurrent = default_max_concurrent or settings.MAX_CONCURRENT_SESSIONS
        self._usage: Dict[Tuple[str, str], UserUsage] = {}
        self._limits: Dict[str, UserLimits] = {}
        self._sessions: Dict[str, ActiveSession] = {}
        self._save_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Load the JSON mirror if there is one.

        An unreadable mirror is a storage failure: starting empty would hand
        every user a fresh allowance.
        """
        if not self.json_path or not os.path.exists(self.json_path):
            await self._save()
            return

        try:
            data = await asyncio.to_thread(self._read_file)
            usage = [UserUsage(**item) for item in data.get("usage", [])]
            limits = [UserLimits(**item) for item in data.get("limits", [])]
            sessions = [ActiveSession(**item) for item in data.get("sessions", [])]
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.error("[STORE] Could not load %s: %s", self.json_path, e)
            raise StorageFailure(f"Usage data at {self.json_path} is unreadable") from e

        self._usage = {(u.user_id, u.period): u for u in usage}
        self._limits = {l.user_id: l for l in limits}
        self._sessions = {s.session_id: s for s in sessions}
        logger.info("[STORE] Loaded usage data from %s", self.json_path)

    async def close(self) -> None:
        await self._save()

    def _read_file(self) -> dict:
        with open(self.json_path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def _save(self) -> None:
        if not self.json_path:
            return

        async with self._save_lock:
            data = {
                "usage": [u.to_dict() for u in self._usage.values()],
                "limits": [l.to_dict() for l in self._limits.values()],
                "sessions": [s.to_dict() for s in self._sessions.values()],
            }
            try:
                await asyncio.to_thread(self._write_file, data)
            except OSError as e:
                logger.error("[STORE] Failed to write %s: %s", self.json_path, e)
                raise StorageFailure() from e

    def _write_file(self, data: dict) -> None:
        """Write to a sibling temp file, then swap it in so readers never see a partial file."""
        directory = os.path.dirname(os.path.abspath(self.json_path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".usage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.json_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    async def get_user_usage(self, user_id: str, period: str) -> Optional[UserUsage]:
        await asyncio.sleep(0)
        usage = self._usage.get((user_id, period))
        return replace(usage) if usage else None

    async def upsert_user_usage(self, usage: UserUsage) -> None:
        await asyncio.sleep(0)
        self._usage[(usage.user_id, usage.period)] = replace(usage)
        await self._save()

    async def get_user_limits(self, user_id: str) -> UserLimits:
        await asyncio.sleep(0)
        limits = self._limits.get(user_id)
        if not limits:
            return UserLimits(user_id=user_id, max_concurrent_sessions=self.default_max_concurrent)
        return replace(limits)

    async def set_user_limits(self, limits: UserLimits) -> None:
        await asyncio.sleep(0)
        self._limits[limits.user_id] = replace(limits)
        await self._save()

    async def create_active_session(self, session: ActiveSession) -> None:
        await asyncio.sleep(0)
        if session.session_id in self._sessions:
            raise StorageFailure(f"Duplicate session id {session.session_id}")
        self._sessions[session.session_id] = replace(session)
        await self._save()

    async def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        await asyncio.sleep(0)
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def update_active_session(self, session_id: str, **fields) -> bool:
        unknown = set(fields) - set(SESSION_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        await asyncio.sleep(0)
        session = self._sessions.get(session_id)
        if not session or not fields:
            return False
        self._sessions[session_id] = replace(session, **fields)
        await self._save()
        return True

    async def delete_active_session(self, session_id: str) -> bool:
        await asyncio.sleep(0)
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            await self._save()
        return removed

    async def get_user_active_sessions(self, user_id: str) -> List[ActiveSession]:
        await asyncio.sleep(0)
        return [replace(s) for s in self._sessions.values() if s.user_id == user_id]

    async def get_all_active_sessions(self) -> List[ActiveSession]:
        await asyncio.sleep(0)
        return [replace(s) for s in self._sessions.values()]

    async def cleanup_expired_sessions(self, now_ms: int) -> int:
        await asyncio.sleep(0)
        expired = [sid for sid, s in self._sessions.items() if s.token_expiry < now_ms]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            await self._save()
        return len(expired)
