"""Real-time status notification for workflow runs."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set
from queue import Queue, Empty

from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import StatusEvent, utcnow
from .logging import get_logger

logger = get_logger(__name__)

EXECUTION_TOPIC = "execution"
WORKFLOW_TOPIC = "workflow"


def topic_key(kind: str, identifier: str) -> str:
    if kind not in (EXECUTION_TOPIC, WORKFLOW_TOPIC):
        raise ValueError(f"Unknown subscription kind: {kind}")
    return f"{kind}:{identifier}"


class Notifier(ABC):
    """
    Publishes StatusEvents to observers.

    Publishing never raises: a delivery problem is logged and the run carries
    on.
    """

    def publish(self, event: StatusEvent) -> None:
        try:
            self._deliver(event)
        except Exception as e:
            logger.warning(
                f"Failed to publish {event.status} event for execution {event.execution_id}: {str(e)}"
            )

    @abstractmethod
    def _deliver(self, event: StatusEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes status events to the log; used when no observers are attached."""

    def _deliver(self, event: StatusEvent) -> None:
        target = f" node {event.node_id}" if event.node_id else ""
        logger.debug(f"Execution {event.execution_id}{target}: {event.status}")


class CompositeNotifier(Notifier):
    """Fans an event out to several notifiers."""

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = list(notifiers)

    def _deliver(self, event: StatusEvent) -> None:
        for notifier in self.notifiers:
            notifier.publish(event)


class WebSocketConnection:
    """A monitor connection and the topics it follows."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = utcnow()
        self.topics: Set[str] = set()
        self.is_active = True


class WebSocketNotifier(Notifier):
    """
    Broadcasts status events to WebSocket clients subscribed by execution or
    workflow ID.

    ``publish`` is called from lane worker threads, so events go through a
    thread-safe queue that an asyncio task on the server loop drains.
    """

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._subscribers: Dict[str, Set[str]] = {}
        # Created on the server loop by start_broadcast_processor
        self._broadcast_lock: Optional[asyncio.Lock] = None
        self._broadcast_queue: Queue = Queue()
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._processing_broadcasts = False

    def _deliver(self, event: StatusEvent) -> None:
        self._broadcast_queue.put(event)

    async def connect(self, websocket: WebSocket) -> Optional[str]:
        """Accept a connection; None when the connection limit is reached."""
        await websocket.accept()

        if self.get_connection_count() >= self.max_connections:
            await websocket.send_text(json.dumps({
                "event_type": "error",
                "message": "Too many monitor connections",
                "timestamp": utcnow().isoformat()
            }))
            await websocket.close(code=1013)
            logger.warning("Rejected WebSocket connection: limit reached")
            return None

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)
        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": utcnow().isoformat()
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        connection.is_active = False
        for topic in list(connection.topics):
            self._remove_subscriber(topic, connection_id)
        logger.info(f"WebSocket connection disconnected: {connection_id}")

    async def subscribe(self, connection_id: str, kind: str, identifier: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        topic = topic_key(kind, identifier)
        connection.topics.add(topic)
        self._subscribers.setdefault(topic, set()).add(connection_id)
        logger.info(f"Connection {connection_id} subscribed to {topic}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            f"{kind}_id": identifier,
            "timestamp": utcnow().isoformat()
        })
        return True

    async def unsubscribe(self, connection_id: str, kind: str, identifier: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        topic = topic_key(kind, identifier)
        connection.topics.discard(topic)
        self._remove_subscriber(topic, connection_id)
        return True

    def _remove_subscriber(self, topic: str, connection_id: str) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[topic]

    async def broadcast(self, event: StatusEvent) -> int:
        """Send an event to every subscriber of its execution or workflow. Returns the recipient count."""
        recipients: Set[str] = set()
        recipients |= self._subscribers.get(topic_key(EXECUTION_TOPIC, event.execution_id), set())
        recipients |= self._subscribers.get(topic_key(WORKFLOW_TOPIC, event.workflow_id), set())
        if not recipients:
            return 0

        message = {"event_type": "status", **event.model_dump(mode="json")}
        if self._broadcast_lock is None:
            self._broadcast_lock = asyncio.Lock()
        async with self._broadcast_lock:
            disconnected = []
            for connection_id in recipients:
                if not await self._send_to_connection(connection_id, message):
                    disconnected.append(connection_id)
            for connection_id in disconnected:
                await self.disconnect(connection_id)

        return len(recipients) - len(disconnected)

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
        except (RuntimeError, OSError) as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
        connection.is_active = False
        return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_subscriber_count(self, kind: str, identifier: str) -> int:
        return len(self._subscribers.get(topic_key(kind, identifier), set()))

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "total_connections": self.get_connection_count(),
            "connections": [
                {
                    "connection_id": conn_id,
                    "connected_at": conn.connected_at.isoformat(),
                    "topics": sorted(conn.topics)
                }
                for conn_id, conn in self._connections.items() if conn.is_active
            ],
            "pending_events": self._broadcast_queue.qsize()
        }

    def start_broadcast_processor(self):
        """Start draining queued events; must be called from the running event loop."""
        if not self._processing_broadcasts:
            self._processing_broadcasts = True
            self._broadcast_lock = asyncio.Lock()
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    def stop_broadcast_processor(self):
        self._processing_broadcasts = False
        if self._queue_processor_task:
            self._queue_processor_task.cancel()
            self._queue_processor_task = None
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self):
        while self._processing_broadcasts:
            try:
                event = self._broadcast_queue.get_nowait()
            except Empty:
                await asyncio.sleep(0.1)
                continue

            try:
                await self.broadcast(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error broadcasting event for execution {event.execution_id}: {str(e)}")
            finally:
                self._broadcast_queue.task_done()
