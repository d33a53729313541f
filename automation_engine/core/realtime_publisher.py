"""Realtime publisher for run and step events.

Executor threads call ``publish`` which only enqueues; an asyncio task owned
by the web application drains the queue and fans events out to websocket
subscribers. Publishing never raises into the caller.
"""

import asyncio
import json
import uuid
from datetime import datetime
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import RunEvent, RunEventType, RunStatus, StepRecord
from .logging import get_logger

logger = get_logger(__name__)


class SubscriberConnection:
    """A websocket connection and what it listens to."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.utcnow()
        self.run_ids: Set[str] = set()
        self.workflow_ids: Set[str] = set()
        self.is_active = True

    def wants(self, event: RunEvent) -> bool:
        return event.run_id in self.run_ids or event.workflow_id in self.workflow_ids


class RealtimePublisher:
    """Fire-and-forget fan-out of canonical run events."""

    def __init__(self, max_queue_size: int = 10000):
        self._connections: Dict[str, SubscriberConnection] = {}
        self._listeners: List[Callable[[RunEvent], None]] = []
        self._queue: Queue = Queue(maxsize=max_queue_size)
        self._processor_task: Optional[asyncio.Task] = None
        self._processing = False
        self.dropped_events = 0

        logger.info("RealtimePublisher initialized")

    # Producer side (any thread)

    def publish(self, event: RunEvent) -> None:
        """Queue an event for delivery. Never raises."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Run event listener failed for {event.event.value}: {str(e)}")

        try:
            self._queue.put_nowait(event)
        except Full:
            self.dropped_events += 1
            logger.warning(f"Publisher queue full; dropped {event.event.value} for run {event.run_id}")
        except Exception as e:
            logger.warning(f"Failed to queue run event: {str(e)}")

    def run_created(self, run_id: str, workflow_id: str, total_nodes: int) -> None:
        self.publish(RunEvent(
            event=RunEventType.RUN_CREATED,
            run_id=run_id,
            workflow_id=workflow_id,
            status=RunStatus.RUNNING.value,
            progress={"completed": 0, "total": total_nodes},
        ))

    def step_completed(self, run_id: str, workflow_id: str, step: StepRecord,
                       completed: int, total: int) -> None:
        self.publish(RunEvent(
            event=RunEventType.STEP_COMPLETED,
            run_id=run_id,
            workflow_id=workflow_id,
            status=step.status.value,
            node_id=step.node_id,
            progress={"completed": completed, "total": total},
            error=step.error,
            result=step.result,
        ))

    def run_completed(self, run_id: str, workflow_id: str, status: RunStatus,
                      error: Optional[Dict[str, Any]] = None) -> None:
        self.publish(RunEvent(
            event=RunEventType.RUN_COMPLETED,
            run_id=run_id,
            workflow_id=workflow_id,
            status=status.value,
            error=error,
        ))

    def add_listener(self, listener: Callable[[RunEvent], None]) -> None:
        """Register an in-process callback invoked synchronously on publish."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[RunEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # Consumer side (event loop)

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = SubscriberConnection(websocket, connection_id)
        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send(connection_id, {
            "event": "connectionEstablished",
            "connectionId": connection_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            connection.is_active = False
            logger.info(f"WebSocket connection closed: {connection_id}")

    async def subscribe(self, connection_id: str, run_id: Optional[str] = None,
                        workflow_id: Optional[str] = None) -> bool:
        """Subscribe a connection to a run, a workflow, or both."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown connection: {connection_id}")
            return False
        if not run_id and not workflow_id:
            return False

        if run_id:
            connection.run_ids.add(run_id)
        if workflow_id:
            connection.workflow_ids.add(workflow_id)

        await self._send(connection_id, {
            "event": "subscribed",
            "runId": run_id,
            "workflowId": workflow_id,
        })
        return True

    async def unsubscribe(self, connection_id: str, run_id: Optional[str] = None,
                          workflow_id: Optional[str] = None) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        if run_id:
            connection.run_ids.discard(run_id)
        if workflow_id:
            connection.workflow_ids.discard(workflow_id)
        return True

    async def send(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send(connection_id, data)

    async def broadcast(self, event: RunEvent) -> int:
        """Deliver one event to every interested connection; returns the count."""
        message = event.to_message()
        delivered = 0
        dead = []
        for connection_id, connection in list(self._connections.items()):
            if not connection.wants(event):
                continue
            if await self._send(connection_id, message):
                delivered += 1
            else:
                dead.append(connection_id)

        for connection_id in dead:
            await self.disconnect(connection_id)
        return delivered

    async def _send(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False
        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
        except Exception as e:
            logger.warning(f"Error sending to WebSocket {connection_id}: {str(e)}")
        connection.is_active = False
        return False

    def start(self) -> None:
        """Start draining the queue on the running event loop."""
        if not self._processing:
            self._processing = True
            self._processor_task = asyncio.create_task(self._drain())
            logger.info("Realtime publisher started")

    def stop(self) -> None:
        self._processing = False
        if self._processor_task:
            self._processor_task.cancel()
            self._processor_task = None
            logger.info("Realtime publisher stopped")

    async def _drain(self) -> None:
        while self._processing:
            try:
                try:
                    event = self._queue.get_nowait()
                except Empty:
                    await asyncio.sleep(0.05)
                    continue
                await self.broadcast(event)
                self._queue.task_done()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Error delivering run event: {str(e)}")
                await asyncio.sleep(0.05)

    def get_connection_count(self) -> int:
        return len([c for c in self._connections.values() if c.is_active])

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "total_connections": self.get_connection_count(),
            "pending_events": self.pending,
            "dropped_events": self.dropped_events,
            "connections": [
                {
                    "connection_id": c.connection_id,
                    "connected_at": c.connected_at.isoformat(),
                    "run_ids": sorted(c.run_ids),
                    "workflow_ids": sorted(c.workflow_ids),
                }
                for c in self._connections.values() if c.is_active
            ],
        }
