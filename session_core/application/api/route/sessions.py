from typing import Any, Dict, Optional
from dataclasses import asdict
from fastapi import APIRouter, Body, Depends, Header, Query

from session_core.application.container import CoreServices
from session_core.application.api.schema.events import get_services
from session_core.infrastructure.security.admin_auth import verify_admin_secret

router = APIRouter(prefix="/api/v1", tags=["sessions"])


async def require_admin(
    x_admin_secret: Optional[str] = Header(default=None),
    services: CoreServices = Depends(get_services),
):
    verify_admin_secret(x_admin_secret, services.settings.admin_secret)


@router.patch("/sessions/{session_key}")
async def patch_session(
    session_key: str,
    patch: Dict[str, Any] = Body(...),
    expected_version: Optional[int] = Query(default=None),
    services: CoreServices = Depends(get_services),
):
    """Merge a patch into the session context and return the committed context"""

    if expected_version is not None:
        context = await services.store.update_if_version(session_key, patch, expected_version)
    else:
        context = await services.store.update(session_key, patch)
    return context.model_dump(mode="json")


@router.get("/admin/sessions/{session_key}", dependencies=[Depends(require_admin)])
async def get_session(session_key: str, services: CoreServices = Depends(get_services)):
    context = await services.store.get(session_key)
    return {**context.model_dump(mode="json"), "summary": context.get_summary()}


@router.get("/admin/sessions/{session_key}/capabilities", dependencies=[Depends(require_admin)])
async def get_capabilities(
    session_key: str,
    last: Optional[int] = Query(default=None),
    services: CoreServices = Depends(get_services),
):
    entries = await services.store.capabilities(session_key, last)
    return {"session_key": session_key, "capabilities": [e.model_dump(mode="json") for e in entries]}


@router.get("/admin/usage", dependencies=[Depends(require_admin)])
async def get_usage(
    identity: Optional[str] = Query(default=None),
    services: CoreServices = Depends(get_services),
):
    """Ledger totals for one identity, or for every identity"""
    if identity:
        return services.ledger.usage(identity)
    return services.ledger.usage_stats()


@router.get("/admin/metrics", dependencies=[Depends(require_admin)])
async def get_metrics(services: CoreServices = Depends(get_services)):
    return {
        "metrics": services.metrics.get_metrics_summary(),
        "sessions": services.store.stats(),
        "rate_windows": services.rate_limiter.store.get_stats(),
        "idempotency": services.idempotency.entries.get_stats(),
        "voice_tokens": services.voice_tokens.get_stats(),
        "pending_write_backs": services.orchestrator.pending_write_backs,
    }


@router.get("/admin/sessions/{session_key}/rate-limits", dependencies=[Depends(require_admin)])
async def get_rate_limits(session_key: str, services: CoreServices = Depends(get_services)):
    """Open rate windows per tool, plus chat turns"""

    purposes = [tool["id"] for tool in services.tools.registry.get_available_tools()] + ["chat"]
    windows = {}
    for purpose in purposes:
        window = services.rate_limiter.peek(purpose, session_key)
        windows[purpose] = asdict(window) if window is not None else None
    return {"session_key": session_key, "windows": windows}
