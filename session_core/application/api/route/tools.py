from typing import Any, Dict, Optional
from fastapi import APIRouter, Body, Depends, Query, Response

from session_core.application.container import CoreServices
from session_core.application.api.schema.events import RequestKeys, get_request_keys, get_services

router = APIRouter(prefix="/api/v1/tools", tags=["tools"])


@router.get("")
async def list_tools(
    category: Optional[str] = Query(default=None),
    services: CoreServices = Depends(get_services),
):
    """Registered tools with their limits"""
    registry = services.tools.registry
    if category:
        return {"tools": registry.get_tools_by_category(category)}
    return {"tools": registry.get_available_tools()}


@router.get("/booking/slots")
async def booking_slots(
    date: str = Query(..., description="YYYY-MM-DD"),
    services: CoreServices = Depends(get_services),
):
    """Free consultation slots for a day"""
    return {"date": date, "slots": await services.scheduler.available_slots(date)}


@router.post("/{tool_name}")
async def call_tool(
    tool_name: str,
    payload: Dict[str, Any] = Body(...),
    keys: RequestKeys = Depends(get_request_keys),
    services: CoreServices = Depends(get_services),
):
    outcome = await services.tools.call_tool(keys.session_key, keys.idempotency_key, tool_name, payload)

    headers = {"X-Idempotent-Replay": "true"} if outcome.replayed else None
    # the stored body is returned as is so replays are byte-identical
    return Response(content=outcome.body, media_type="application/json", headers=headers)
