"""
Notification Service

Per-stream event queues for marketplace state changes (offer accepted,
tickets delivered, payout released, ...). The escrow core calls notify()
and never waits on delivery; clients read their events as a Server-Sent
Events stream.
"""
import asyncio
import json
import logging
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class NotificationHub:
    """
    In-process notification fan-out.

    Every open stream gets its own bounded queue, registered when the stream
    starts and dropped when it ends; notify() only writes to queues that
    exist, so users with no open stream cost nothing beyond their history.
    notify() is synchronous and non-blocking: when a queue is full the
    oldest event is dropped. The last few events per user are kept in a
    short history, for at most max_history_users users (least recently
    notified users are forgotten first).
    """

    def __init__(self, queue_size: int = 100, history_size: int = 50, max_history_users: int = 1000):
        self._queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._history: "OrderedDict[str, Deque[Dict[str, Any]]]" = OrderedDict()
        self._history_size = history_size
        self._max_history_users = max_history_users

        logger.info(f"Notification hub initialized (queue size: {queue_size})")

    def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Queue an event for each of a user's open streams.

        Args:
            user_id: Recipient
            event_type: e.g. "offer_accepted", "payout_released"
            payload: JSON-serializable event data
        """
        event = {
            "type": event_type,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        self._remember(user_id, event)

        for queue in self._subscribers.get(user_id, ()):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(f"Notification queue full for {user_id}, dropped {dropped['type']}")
            queue.put_nowait(event)
        logger.debug(f"Queued {event_type} for {user_id}")

    def recent(self, user_id: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recent events for a user, optionally filtered by type."""
        events = list(self._history.get(user_id, ()))
        if event_type:
            events = [e for e in events if e["type"] == event_type]
        return events

    async def stream(self, user_id: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield events for a user as they arrive.

        The stream's queue exists from the first iteration until the
        generator exits. Blocks until events are available or close() ends
        the stream.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(user_id, []).append(queue)

        try:
            while True:
                event = await queue.get()

                # None is sentinel value for stream close
                if event is None:
                    logger.info(f"Notification stream closed: {user_id}")
                    break

                yield event

        except asyncio.CancelledError:
            logger.info(f"Notification stream cancelled: {user_id}")
            raise
        finally:
            self._unsubscribe(user_id, queue)

    def close(self, user_id: str) -> None:
        """End every open stream of the user."""
        for queue in self._subscribers.get(user_id, ()):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)

    def get_active_stream_count(self) -> int:
        return sum(len(queues) for queues in self._subscribers.values())

    def _unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(user_id)
        if queues is None:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[user_id]

    def _remember(self, user_id: str, event: Dict[str, Any]) -> None:
        history = self._history.get(user_id)
        if history is None:
            history = self._history[user_id] = deque(maxlen=self._history_size)
        else:
            self._history.move_to_end(user_id)
        history.append(event)

        while len(self._history) > self._max_history_users:
            self._history.popitem(last=False)


def format_sse_event(event_type: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """
    Format event according to SSE specification.

    Returns:
        Formatted SSE message string
    """
    lines = []

    if event_type:
        lines.append(f"event: {event_type}")

    if event_id:
        lines.append(f"id: {event_id}")

    if data:
        lines.append(f"data: {json.dumps(data, default=str)}")

    lines.append("")
    lines.append("")

    return "\n".join(lines)
