"""
Notifications API Endpoints

Server-Sent Events stream of a user's marketplace notifications (offer
accepted, tickets delivered, payout released, ...).
"""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

from ..dependencies import Actor, ServiceContainer, get_actor, get_services
from ..services.notification_service import format_sse_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/stream")
async def notification_stream_endpoint(
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> StreamingResponse:
    """
    Stream the caller's notifications as Server-Sent Events.

    Each event carries the notification type as the SSE event name and the
    payload as JSON data. The stream stays open until the client disconnects.

    Example:
        GET /api/notifications/stream?user_id=user_demo_seller
    """
    hub = services.notifications
    logger.info(f"Notification stream opened: {actor.user_id}")

    async def event_generator() -> AsyncIterator[str]:
        yield format_sse_event("connected", {"user_id": actor.user_id})

        sequence = 0
        # Closing the stream on disconnect drops its queue
        async with aclosing(hub.stream(actor.user_id)) as events:
            async for event in events:
                sequence += 1
                yield format_sse_event(
                    event["type"],
                    dict(event["data"], timestamp=event["timestamp"]),
                    event_id=str(sequence)
                )

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.get("/recent")
async def recent_notifications_endpoint(
    event_type: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> List[Dict[str, Any]]:
    """The caller's most recent notifications, oldest first."""
    return services.notifications.recent(actor.user_id, event_type)
