import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import Request

from .config import settings
from .database import SQLiteUsageStore
from .errors import StorageFailure
from .jobs import JobScheduler, ScheduledJob
from .memory_store import MemoryUsageStore
from .models import epoch_ms
from .realtime.monitor import ConnectionMonitor
from .realtime.openai_client import RealtimeSessionBroker
from .tokens import TokenService
from .usage import UsageService

T = TypeVar("T")


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""

    store: object
    tokens: TokenService
    usage: UsageService
    monitor: ConnectionMonitor
    broker: RealtimeSessionBroker
    jobs: Optional[JobScheduler] = None
    store_timeout_seconds: float = 5.0
    heartbeat_tolerance_seconds: int = 300
    admin_api_key: str = ""


def build_services(
    store=None,
    clock: Callable[[], int] = epoch_ms,
    broker: Optional[RealtimeSessionBroker] = None,
    enable_jobs: Optional[bool] = None,
) -> Services:
    if store is None:
        if settings.USAGE_BACKEND == "memory":
            store = MemoryUsageStore(settings.JSON_FALLBACK_PATH or None)
        else:
            store = SQLiteUsageStore(settings.DATABASE_PATH)

    tokens = TokenService(clock=clock)
    usage = UsageService(store, tokens, clock=clock)
    monitor = ConnectionMonitor(usage, tokens)

    jobs = None
    if settings.ENABLE_BACKGROUND_JOBS if enable_jobs is None else enable_jobs:
        jobs = JobScheduler()
        jobs.add(ScheduledJob(
            job_id="usage_cleanup",
            name="Usage session sweep",
            func=usage.cleanup_expired_sessions,
            interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
        ))
        jobs.add(ScheduledJob(
            job_id="monitor_reaper",
            name="Idle push channel reaper",
            func=monitor.reap_idle_connections,
            interval_seconds=settings.MONITOR_REAP_INTERVAL_SECONDS,
        ))

    return Services(
        store=store,
        tokens=tokens,
        usage=usage,
        monitor=monitor,
        broker=broker or RealtimeSessionBroker(),
        jobs=jobs,
        store_timeout_seconds=settings.STORE_TIMEOUT_SECONDS,
        heartbeat_tolerance_seconds=settings.HEARTBEAT_TOLERANCE_SECONDS,
        admin_api_key=settings.ADMIN_API_KEY,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def with_store_timeout(services: Services, operation: Awaitable[T]) -> T:
    """Fail closed if the usage store does not answer in time."""
    try:
        return await asyncio.wait_for(operation, timeout=services.store_timeout_seconds)
    except asyncio.TimeoutError as e:
        raise StorageFailure("Usage store timed out") from e
