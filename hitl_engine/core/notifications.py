"""Fire-and-forget execution events for in-process listeners and WebSocket clients."""

import inspect
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .logging import get_logger

logger = get_logger(__name__)


EXECUTION_STARTED = "execution_started"
NODE_COMPLETED = "node_completed"
NODE_FAILED = "node_failed"
WORKFLOW_PAUSED = "workflow:paused"
WORKFLOW_RESUMED = "workflow:resumed"
EXECUTION_COMPLETED = "execution_completed"
EXECUTION_ABORTED = "execution_aborted"


class NotificationEvent(BaseModel):
    """Event delivered to listeners and WebSocket subscribers."""
    event_type: str
    execution_id: str
    timestamp: datetime
    data: Dict[str, Any]


Listener = Callable[[NotificationEvent], Union[None, Awaitable[None]]]


@dataclass
class Subscriber:
    """A WebSocket client and the executions it watches."""
    websocket: WebSocket
    executions: Set[str] = field(default_factory=set)
    alive: bool = True


class Notifier:
    """Publishes execution events.

    ``publish`` never raises: a failing listener or a dead socket is logged
    and dropped so that notification problems cannot fail a run.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._subscribers: Dict[str, Subscriber] = {}
        self._watchers: Dict[str, Set[str]] = {}

    def add_listener(self, listener: Listener) -> None:
        """Register an in-process callable that receives every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, execution_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Deliver an event to listeners and to WebSocket subscribers of the execution.

        Args:
            execution_id: Execution the event belongs to
            event_type: Event name, e.g. ``workflow:paused``
            data: Event payload
        """
        event = NotificationEvent(
            event_type=event_type,
            execution_id=execution_id,
            timestamp=datetime.utcnow(),
            data=data or {},
        )

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Notification listener failed for {event_type}: {str(e)}")

        watchers = self._watchers.get(execution_id)
        if watchers:
            payload = event.model_dump(mode="json")
            for subscriber_id in list(watchers):
                await self._send(subscriber_id, payload)
            logger.debug(f"Sent {event_type} for execution {execution_id} to {len(watchers)} clients")

    # WebSocket clients

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket and greet it with its subscriber id."""
        await websocket.accept()
        subscriber_id = str(uuid.uuid4())
        self._subscribers[subscriber_id] = Subscriber(websocket)
        logger.info(f"Event stream client connected: {subscriber_id}")

        await self._send(subscriber_id, _control_message("connection_established", connection_id=subscriber_id))
        return subscriber_id

    async def subscribe(self, subscriber_id: str, execution_id: str) -> bool:
        """Start streaming one execution's events to a connected client."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None or not subscriber.alive:
            logger.warning(f"Cannot subscribe unknown client {subscriber_id}")
            return False

        subscriber.executions.add(execution_id)
        self._watchers.setdefault(execution_id, set()).add(subscriber_id)
        await self._send(subscriber_id, _control_message("subscription_confirmed", execution_id=execution_id))
        return True

    async def disconnect(self, subscriber_id: str) -> None:
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return

        subscriber.alive = False
        for execution_id in subscriber.executions:
            watchers = self._watchers.get(execution_id, set())
            watchers.discard(subscriber_id)
            if not watchers:
                self._watchers.pop(execution_id, None)
        logger.info(f"Event stream client disconnected: {subscriber_id}")

    def get_connection_count(self) -> int:
        return sum(1 for subscriber in self._subscribers.values() if subscriber.alive)

    def get_subscriber_count(self, execution_id: str) -> int:
        return len(self._watchers.get(execution_id, ()))

    async def _send(self, subscriber_id: str, message: Dict[str, Any]) -> None:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None or not subscriber.alive:
            return

        try:
            await subscriber.websocket.send_text(json.dumps(message, default=str))
        except WebSocketDisconnect:
            logger.info(f"Client {subscriber_id} went away mid-send")
            await self.disconnect(subscriber_id)
        except Exception as e:
            logger.error(f"Dropping client {subscriber_id} after send failure: {str(e)}")
            await self.disconnect(subscriber_id)


def _control_message(event_type: str, **fields) -> Dict[str, Any]:
    return {"event_type": event_type, "timestamp": datetime.utcnow().isoformat(), **fields}
