"""Pytest configuration and fixtures."""

import os
import tempfile
import threading
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from automation_engine.core.exceptions import ResourceExhaustionError
from automation_engine.core.execution_engine import GraphExecutor, RunDispatcher
from automation_engine.core.handler_registry import build_default_registry
from automation_engine.core.kv_store import InMemoryKeyValueStore
from automation_engine.core.realtime_publisher import RealtimePublisher
from automation_engine.core.run_tracker import RunTracker
from automation_engine.core.workflow_repository import WorkflowRepository
from automation_engine.models.core import (
    EdgeDefinition, NodeDefinition, TriggerMetadata, TriggerPayload, WorkflowDefinition
)
from automation_engine.storage.database import configure_database, create_tables


@pytest.fixture
def temp_db():
    """Point the engine at a temporary SQLite file for one test."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    configure_database(f'sqlite:///{db_path}')
    create_tables()

    yield db_path

    configure_database('sqlite:///:memory:')
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def run_tracker(temp_db):
    return RunTracker()


@pytest.fixture
def repository(temp_db):
    return WorkflowRepository()


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


class EventRecorder:
    """Collects published run events synchronously."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[Any]:
        with self._lock:
            return [e for e in self.events if e.event.value == event_type]


@pytest.fixture
def publisher():
    return RealtimePublisher()


@pytest.fixture
def events(publisher):
    recorder = EventRecorder()
    publisher.add_listener(recorder)
    return recorder


@pytest.fixture
def executor(run_tracker, kv_store, publisher):
    graph_executor = GraphExecutor(
        run_tracker=run_tracker,
        registry=build_default_registry(),
        kv_store=kv_store,
        publisher=publisher,
        node_worker_count=4,
    )
    yield graph_executor
    graph_executor.shutdown(wait_for_nodes=False)


@pytest.fixture
def dispatcher(executor, run_tracker):
    run_dispatcher = RunDispatcher(executor, run_tracker, worker_count=2, job_queue_size=10)
    run_dispatcher.start()
    yield run_dispatcher
    run_dispatcher.shutdown(timeout=5)


class StubDispatcher:
    """Records submissions instead of executing them."""

    def __init__(self, full: bool = False):
        self.submitted = []
        self.full = full

    def submit(self, workflow, payload):
        if self.full:
            raise ResourceExhaustionError("Run queue is full", resource_type="run_queue")
        self.submitted.append((workflow, payload))
        return str(uuid.uuid4())


@pytest.fixture
def stub_dispatcher():
    return StubDispatcher()


@pytest.fixture
def full_dispatcher():
    return StubDispatcher(full=True)


def node(node_id: str, kind: str, required: bool = True, timeout: Optional[float] = None,
         **data) -> NodeDefinition:
    return NodeDefinition(id=node_id, type=kind, data=data, required=required, timeout=timeout)


def edge(source: str, target: str, handle: Optional[str] = None) -> EdgeDefinition:
    return EdgeDefinition(id=f"{source}->{target}:{handle or ''}", source=source, target=target,
                          source_handle=handle)


def workflow(nodes: List[NodeDefinition], edges: Optional[List[EdgeDefinition]] = None,
             workflow_id: str = "wf-test", **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(id=workflow_id, name="Test workflow", nodes=nodes, edges=edges or [], **kwargs)


def payload(wf: WorkflowDefinition, trigger_node_id: str = "trigger", data: Optional[Dict[str, Any]] = None,
            source_type: str = "form") -> TriggerPayload:
    return TriggerPayload(
        workflow_id=wf.id,
        trigger_node_id=trigger_node_id,
        data=data or {},
        metadata=TriggerMetadata(source_type=source_type),
    )


@pytest.fixture
def builders():
    """Graph construction helpers: ``node``, ``edge``, ``workflow`` and ``payload``."""
    return SimpleNamespace(node=node, edge=edge, workflow=workflow, payload=payload)
