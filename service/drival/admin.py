"""
Administrative usage endpoints, guarded by the ``X-Admin-Key`` header.
Disabled entirely when ``ADMIN_API_KEY`` is unset.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from .deps import Services, get_services, with_store_timeout
from .schemas import LimitsUpdate


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> None:
    expected = services.admin_api_key
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=401,
            detail={"error": {"code": "ADMIN_ONLY", "message": "Valid X-Admin-Key header required"}},
        )


router = APIRouter(
    prefix="/api/admin/users",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


@router.get("/{user_id}/usage")
async def get_usage(user_id: str, services: Services = Depends(get_services)):
    stats = await with_store_timeout(services, services.usage.get_user_stats(user_id))
    return stats.to_dict()


@router.put("/{user_id}/limits")
async def update_limits(user_id: str, body: LimitsUpdate, services: Services = Depends(get_services)):
    limits = await with_store_timeout(
        services,
        services.usage.update_user_limits(
            user_id,
            enabled=body.enabled,
            max_concurrent_sessions=body.max_concurrent_sessions,
        ),
    )
    return {
        "userId": limits.user_id,
        "enabled": limits.enabled,
        "maxConcurrentSessions": limits.max_concurrent_sessions,
    }


@router.post("/{user_id}/reset")
async def reset_usage(user_id: str, services: Services = Depends(get_services)):
    """Restore the user's allowance for the current period."""
    usage = await with_store_timeout(services, services.usage.reset_usage(user_id))
    return usage.to_dict()


@router.post("/{user_id}/end-sessions")
async def end_sessions(user_id: str, services: Services = Depends(get_services)):
    ended = await with_store_timeout(services, services.usage.force_end_user_sessions(user_id))
    return {"userId": user_id, "ended": ended}
