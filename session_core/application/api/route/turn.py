from typing import AsyncIterator, Optional
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
import structlog

from session_core.application.container import CoreServices
from session_core.application.api.schema.events import (
    RequestKeys, TurnBody, encode_frame, get_request_keys, get_services
)
from session_core.domain.models.turn_state import StreamFrame, TurnRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["turn"])


@router.post("/turn")
async def stream_turn(
    body: TurnBody,
    keys: RequestKeys = Depends(get_request_keys),
    services: CoreServices = Depends(get_services),
):
    """Stream one assistant turn as server-sent events"""

    session_key = keys.require_session()
    stream = services.orchestrator.start_turn(TurnRequest(
        session_key=session_key,
        message=body.message,
        feature_mode=body.feature_mode,
        history=body.history,
    ))
    frames = stream.frames()

    # rejections happen before the first frame and become plain JSON errors
    first: Optional[StreamFrame]
    try:
        first = await frames.__anext__()
    except StopAsyncIteration:
        first = None

    async def event_source() -> AsyncIterator[str]:
        try:
            if first is not None:
                yield encode_frame(first)
            async for frame in frames:
                yield encode_frame(frame)
        finally:
            stream.cancel()
            await frames.aclose()
            logger.debug("Turn stream closed", session_id=session_key, state=stream.state.value)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
