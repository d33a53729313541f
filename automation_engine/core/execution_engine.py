"""Graph executor and bounded run dispatcher.

``RunDispatcher`` admits trigger payloads into a bounded queue and worker
threads hand each one to ``GraphExecutor.execute``. The executor runs a
coordinator loop per run: node handlers execute on a shared thread pool while
the coordinator records steps, updates join counters and decides which nodes
become ready, skipped or timed out.
"""

import threading
import time
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from queue import Empty, Full, Queue
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from ..models.core import (
    EdgeDefinition, NodeDefinition, RunStatus, StepRecord, StepStatus,
    TriggerPayload, WorkflowDefinition
)
from ..handlers.base import HandlerContext, HandlerResult, NodeHandler
from .exceptions import (
    ExecutionEngineError, NodeExecutionError, NodeTimeoutError, ResourceExhaustionError, RunNotFoundError,
    RunStateError, WorkflowEngineError
)
from .handler_registry import HandlerRegistry
from .kv_store import KeyValueStore, RunKeys
from .logging import get_logger, logging_context
from .realtime_publisher import RealtimePublisher
from .run_tracker import RunTracker
from .templating import BindingError, resolve_bindings

logger = get_logger(__name__)

# Inbound edge outcomes as seen by the edge's target.
ACTIVE = "active"
SKIPPED = "skipped"
FAILED = "error"

CANCEL_FLAG_TTL = 24 * 3600


class GraphIndex:
    """Adjacency view of a workflow snapshot, restricted to what the trigger can reach.

    Only edges whose source is reachable from the trigger count towards a
    node's required inbound total, so a join fed partly by another trigger's
    subgraph does not wait forever.
    """

    def __init__(self, workflow: WorkflowDefinition, trigger_node_id: str):
        self.nodes: Dict[str, NodeDefinition] = {node.id: node for node in workflow.nodes}
        self.reachable: Set[str] = workflow.reachable_from(trigger_node_id)
        self.outgoing: Dict[str, Dict[Optional[str], List[EdgeDefinition]]] = {}
        self.required_inbound: Dict[str, int] = {}

        for edge in workflow.edges:
            if edge.source not in self.reachable:
                continue
            self.outgoing.setdefault(edge.source, {}).setdefault(edge.source_handle, []).append(edge)
            self.required_inbound[edge.target] = self.required_inbound.get(edge.target, 0) + 1

    def edges_from(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edges in self.outgoing.get(node_id, {}).values() for edge in edges]

    def split_edges(self, node_id: str, selected_outputs: Optional[List[str]]
                    ) -> Tuple[List[EdgeDefinition], List[EdgeDefinition]]:
        """Partition outgoing edges into (followed, not followed).

        Edges without a source handle are always followed. Handled edges are
        followed when no selection was made or their handle was selected.
        """
        followed, dropped = [], []
        for handle, edges in self.outgoing.get(node_id, {}).items():
            if handle is None or selected_outputs is None or handle in selected_outputs:
                followed.extend(edges)
            else:
                dropped.extend(edges)
        return followed, dropped

    @property
    def total(self) -> int:
        return len(self.reachable)


class _InFlight:
    """A node submitted to the pool and not yet recorded."""

    def __init__(self, node: NodeDefinition, handler: NodeHandler, timeout: Optional[float]):
        self.node = node
        self.handler = handler
        self.started_at = datetime.utcnow()
        self.deadline = time.monotonic() + timeout if timeout else None
        self.timeout = timeout


class _RunState:
    """Mutable bookkeeping for one run, owned by its coordinator thread."""

    def __init__(self, run_id: str, workflow: WorkflowDefinition, payload: TriggerPayload, index: GraphIndex):
        self.run_id = run_id
        self.workflow = workflow
        self.payload = payload
        self.index = index
        self.keys = RunKeys(run_id)
        self.outputs: Dict[str, Any] = {}
        self.inbound: Dict[str, Dict[str, Tuple[str, str]]] = {}
        self.ready: Deque[Tuple[str, Optional[str]]] = deque()
        self.in_flight: Dict[Future, _InFlight] = {}
        self.failed_required: List[str] = []
        self.completed = 0
        self.cancelled = False
        self.closed = False


def _invoke_handler(handler: NodeHandler, config: Dict[str, Any], context: HandlerContext
                    ) -> Tuple[HandlerResult, datetime]:
    with logging_context(run_id=context.run_id, workflow_id=context.workflow_id, node_id=context.node.id):
        try:
            result = handler.execute(config, context)
            if not isinstance(result, HandlerResult):
                result = HandlerResult.success(result)
        except Exception as e:
            logger.warning(f"Handler {handler!r} raised on node {context.node.id} in run {context.run_id}: {str(e)}")
            error = NodeExecutionError(str(e), node_id=context.node.id, run_id=context.run_id,
                                       details={"exception": type(e).__name__})
            result = HandlerResult(StepStatus.ERROR, error=error.step_error())
    return result, datetime.utcnow()


class GraphExecutor:
    """Walks a workflow graph for one run at a time per calling thread."""

    def __init__(
        self,
        run_tracker: RunTracker,
        registry: HandlerRegistry,
        kv_store: KeyValueStore,
        publisher: Optional[RealtimePublisher] = None,
        node_worker_count: int = 16,
        default_node_timeout: Optional[float] = None,
    ):
        self.run_tracker = run_tracker
        self.registry = registry
        self.kv = kv_store
        self.publisher = publisher
        self.default_node_timeout = default_node_timeout
        self._node_pool = ThreadPoolExecutor(max_workers=node_worker_count, thread_name_prefix="node")

        logger.info(f"GraphExecutor initialized with node_worker_count={node_worker_count}")

    def is_cancelled(self, run_id: str) -> bool:
        return self.kv.get(RunKeys(run_id).cancelled) is not None

    def request_cancel(self, run_id: str) -> None:
        self.kv.set(RunKeys(run_id).cancelled, "1", CANCEL_FLAG_TTL)

    def execute(self, workflow: WorkflowDefinition, payload: TriggerPayload,
                run_id: Optional[str] = None) -> RunStatus:
        """
        Execute one run to its terminal status.

        Args:
            workflow: Snapshot of the workflow taken at admission
            payload: Trigger payload that started the run
            run_id: Id assigned at admission

        Returns:
            The run's terminal status as stored
        """
        run_id = run_id or str(uuid.uuid4())
        with logging_context(run_id=run_id, workflow_id=workflow.id, trigger_kind=payload.metadata.source_type):
            self.run_tracker.create_run(workflow.id, payload.snapshot(), run_id=run_id)
            index = GraphIndex(workflow, payload.trigger_node_id)
            self._publish("run_created", run_id, workflow.id, index.total)

            state = _RunState(run_id, workflow, payload, index)
            try:
                state.ready.append((payload.trigger_node_id, None))
                self._coordinate(state)
                return self._finish(state)
            except Exception as e:
                return self._fail_system(state, e)
            finally:
                self.kv.delete(*state.keys.all_for(index.nodes), state.keys.cancelled)

    def _coordinate(self, state: _RunState) -> None:
        while not state.closed:
            self._start_ready(state)
            if not state.in_flight:
                break

            done, _ = wait(list(state.in_flight), timeout=self._next_timeout(state), return_when=FIRST_COMPLETED)

            finished = []
            for future in done:
                flight = state.in_flight.pop(future)
                result, completed_at = future.result()
                finished.append((completed_at, flight, result))
            for completed_at, flight, result in sorted(finished, key=lambda item: item[0]):
                self._complete(state, flight, result, completed_at)

            self._expire_timeouts(state)

    def _start_ready(self, state: _RunState) -> None:
        while state.ready and not state.closed:
            if state.cancelled or self.is_cancelled(state.run_id):
                if not state.cancelled:
                    logger.info(f"Cancellation observed for run {state.run_id}; no further nodes start")
                state.cancelled = True
                state.ready.clear()
                return

            node_id, skip_reason = state.ready.popleft()
            if not self.kv.add_to_set(state.keys.dispatched, node_id):
                logger.warning(f"Node {node_id} already dispatched in run {state.run_id}; ignoring")
                continue

            node = state.index.nodes[node_id]
            if skip_reason:
                self._record(state, node, StepStatus.SKIPPED, result={"skipped": skip_reason})
                self._propagate(state, node_id, StepStatus.SKIPPED, None)
                continue

            handler = self.registry.resolve(node.type)
            context = HandlerContext(
                run_id=state.run_id,
                workflow_id=state.workflow.id,
                node=node,
                trigger=state.payload,
                inputs=self._inputs_for(state, node_id),
                outputs=dict(state.outputs),
                cancel_requested=lambda run_id=state.run_id: self.is_cancelled(run_id),
            )

            config = node.data
            if handler.resolve_bindings:
                try:
                    config = resolve_bindings(node.data, context.binding_scope())
                except BindingError as e:
                    error = NodeExecutionError(str(e), node_id=node_id, run_id=state.run_id,
                                               error_code="BINDING_ERROR", details={"type": "BindingError"})
                    self._record(state, node, StepStatus.ERROR, error=error.step_error(), started_at=datetime.utcnow())
                    self._propagate(state, node_id, StepStatus.ERROR, None)
                    continue

            timeout = node.timeout or self.default_node_timeout
            future = self._node_pool.submit(_invoke_handler, handler, config, context)
            state.in_flight[future] = _InFlight(node, handler, timeout)
            logger.debug(f"Started node {node_id} ({node.type.value}) in run {state.run_id}")

    def _complete(self, state: _RunState, flight: _InFlight, result: HandlerResult, completed_at: datetime) -> None:
        node = flight.node
        if result.status == StepStatus.SUCCESS:
            state.outputs[node.id] = result.output
            self._record(state, node, StepStatus.SUCCESS, result=result.output,
                         started_at=flight.started_at, completed_at=completed_at)
        else:
            self._record(state, node, result.status, result=result.output, error=result.error,
                         started_at=flight.started_at, completed_at=completed_at)
        self._propagate(state, node.id, result.status, result.selected_outputs)

    def _expire_timeouts(self, state: _RunState) -> None:
        now = time.monotonic()
        expired = [(f, flight) for f, flight in state.in_flight.items()
                   if flight.deadline is not None and flight.deadline <= now]
        for future, flight in expired:
            # The handler thread cannot be interrupted; its late result is discarded.
            del state.in_flight[future]
            future.cancel()
            logger.warning(f"Node {flight.node.id} in run {state.run_id} timed out after {flight.timeout}s")
            error = NodeTimeoutError(f"Node timed out after {flight.timeout} seconds", timeout=flight.timeout,
                                     node_id=flight.node.id, run_id=state.run_id)
            self._record(state, flight.node, StepStatus.TIMEOUT, error=error.step_error(), started_at=flight.started_at)
            self._propagate(state, flight.node.id, StepStatus.TIMEOUT, None)

    @staticmethod
    def _next_timeout(state: _RunState) -> Optional[float]:
        deadlines = [flight.deadline for flight in state.in_flight.values() if flight.deadline is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _propagate(self, state: _RunState, node_id: str, status: StepStatus,
                   selected_outputs: Optional[List[str]]) -> None:
        """Count this node's arrival at each successor and queue joins that become ready."""
        if state.closed:
            return

        if status == StepStatus.SUCCESS:
            followed, dropped = state.index.split_edges(node_id, selected_outputs)
            arrivals = [(edge, ACTIVE) for edge in followed] + [(edge, SKIPPED) for edge in dropped]
        else:
            outcome = SKIPPED if status == StepStatus.SKIPPED else FAILED
            arrivals = [(edge, outcome) for edge in state.index.edges_from(node_id)]

        for edge, outcome in arrivals:
            state.inbound.setdefault(edge.target, {})[edge.id] = (edge.source, outcome)
            count = self.kv.incr(state.keys.join_counter(edge.target))
            if count == state.index.required_inbound[edge.target]:
                state.ready.append((edge.target, self._skip_reason(state, edge.target)))

    def _skip_reason(self, state: _RunState, node_id: str) -> Optional[str]:
        """None when the node should run, else why it is skipped."""
        outcomes = [outcome for _, outcome in state.inbound.get(node_id, {}).values()]
        handler = self.registry.resolve(state.index.nodes[node_id].type)

        if FAILED in outcomes and not handler.error_tolerant:
            return "upstreamFailed"
        if ACTIVE in outcomes or (handler.error_tolerant and FAILED in outcomes):
            return None
        return "branchNotSelected"

    @staticmethod
    def _inputs_for(state: _RunState, node_id: str) -> Dict[str, Any]:
        return {
            source: state.outputs.get(source)
            for source, outcome in state.inbound.get(node_id, {}).values()
            if outcome == ACTIVE
        }

    def _record(self, state: _RunState, node: NodeDefinition, status: StepStatus, result: Any = None,
                error: Optional[Dict[str, Any]] = None, started_at: Optional[datetime] = None,
                completed_at: Optional[datetime] = None) -> None:
        step = StepRecord(
            node_id=node.id,
            node_type=node.type.value,
            status=status,
            result=result,
            error=error,
            started_at=started_at,
            completed_at=completed_at or datetime.utcnow(),
        )
        try:
            step = self.run_tracker.append_step(state.run_id, step)
        except RunStateError:
            # Finalized elsewhere (reconciliation); stop driving this run.
            state.closed = True
            return

        state.completed += 1
        if status.is_failure and node.required:
            state.failed_required.append(node.id)
        self._publish("step_completed", state.run_id, state.workflow.id, step, state.completed, state.index.total)

    def _finish(self, state: _RunState) -> RunStatus:
        if state.closed:
            logger.warning(f"Run {state.run_id} was finalized by another party during execution")
            return self.run_tracker.get_run(state.run_id, include_steps=False).status

        if state.cancelled:
            status = RunStatus.FAILED
            error = {"reason": "cancelled", "cancelled": True, "message": "Run was cancelled"}
        elif state.failed_required:
            status = RunStatus.FAILED
            error = {"reason": "nodeFailed", "failedNodes": state.failed_required,
                     "message": f"Required nodes failed: {', '.join(state.failed_required)}"}
        else:
            status, error = RunStatus.SUCCEEDED, None

        if self.run_tracker.finalize(state.run_id, status, error=error):
            self._publish("run_completed", state.run_id, state.workflow.id, status, error)
            return status
        return self.run_tracker.get_run(state.run_id, include_steps=False).status

    def _fail_system(self, state: _RunState, error: Exception) -> RunStatus:
        fault = ExecutionEngineError(
            f"Executor fault in run {state.run_id}: {str(error)}",
            run_id=state.run_id,
            workflow_id=state.workflow.id,
        )
        logger.error(f"{fault.message}", exc_info=True, extra={"extra_fields": {"error_details": fault.to_dict()}})

        for future in list(state.in_flight):
            future.cancel()
        state.in_flight.clear()

        error_body = {"reason": "systemError", "message": str(error), "exception": type(error).__name__}
        try:
            if self.run_tracker.finalize(state.run_id, RunStatus.FAILED, error=error_body):
                self._publish("run_completed", state.run_id, state.workflow.id, RunStatus.FAILED, error_body)
        except WorkflowEngineError as e:
            logger.error(f"Could not finalize run {state.run_id} after executor fault: {str(e)}")
        return RunStatus.FAILED

    def notify_completed(self, run_id: str, workflow_id: str, status: RunStatus,
                         error: Optional[Dict[str, Any]] = None) -> None:
        self._publish("run_completed", run_id, workflow_id, status, error)

    def _publish(self, method: str, *args) -> None:
        if self.publisher is None:
            return
        try:
            getattr(self.publisher, method)(*args)
        except Exception as e:
            logger.warning(f"Publisher {method} failed: {str(e)}")

    def shutdown(self, wait_for_nodes: bool = True) -> None:
        self._node_pool.shutdown(wait=wait_for_nodes)


class RunDispatcher:
    """Bounded hand-off from trigger adapters to executor workers."""

    _STOP = object()

    def __init__(
        self,
        executor: GraphExecutor,
        run_tracker: RunTracker,
        worker_count: int = 4,
        job_queue_size: int = 100,
        run_max_age_seconds: Optional[int] = None,
        reconcile_interval_seconds: int = 60,
    ):
        self.executor = executor
        self.run_tracker = run_tracker
        self.worker_count = worker_count
        self.job_queue_size = job_queue_size
        self.run_max_age_seconds = run_max_age_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds

        self._queue: Queue = Queue(maxsize=job_queue_size)
        self._pending: Set[str] = set()
        self._active: Set[str] = set()
        self._lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False
        self.completed_runs = 0
        self.rejected_runs = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()

        for i in range(self.worker_count):
            worker = threading.Thread(target=self._work, daemon=True, name=f"RunWorker-{i}")
            worker.start()
            self._workers.append(worker)

        if self.run_max_age_seconds:
            self._sweeper = threading.Thread(target=self._sweep, daemon=True, name="RunReconciler")
            self._sweeper.start()
            logger.info(f"Run reconciliation enabled: max age {self.run_max_age_seconds}s, "
                        f"every {self.reconcile_interval_seconds}s")
        else:
            logger.info("Run reconciliation disabled: run_max_age_seconds is not configured")

        logger.info(f"RunDispatcher started with {self.worker_count} workers, queue size {self.job_queue_size}")

    def submit(self, workflow: WorkflowDefinition, payload: TriggerPayload) -> str:
        """
        Admit a run for execution.

        Returns:
            The run id assigned to the run

        Raises:
            ResourceExhaustionError: If the run queue is full
        """
        run_id = str(uuid.uuid4())
        snapshot = workflow.model_copy(deep=True)

        with self._lock:
            self._pending.add(run_id)
        try:
            self._queue.put_nowait((run_id, snapshot, payload))
        except Full:
            with self._lock:
                self._pending.discard(run_id)
                self.rejected_runs += 1
            logger.warning(f"Run queue full ({self.job_queue_size}); rejected trigger for workflow {workflow.id}")
            raise ResourceExhaustionError(
                "Run queue is full, please try again later",
                resource_type="run_queue",
                current_usage=self._queue.qsize(),
                limit=self.job_queue_size,
            )

        logger.info(f"Queued run {run_id} for workflow {workflow.id} from node {payload.trigger_node_id}")
        return run_id

    def cancel_run(self, run_id: str) -> bool:
        """
        Request cooperative cancellation of a queued or running run.

        Raises:
            RunNotFoundError: If the run is neither queued nor stored
            RunStateError: If the run already finished
        """
        with self._lock:
            queued = run_id in self._pending
            active = run_id in self._active

        if not queued:
            try:
                run = self.run_tracker.get_run(run_id, include_steps=False)
            except RunNotFoundError:
                # An active run may not be stored yet; the executor checks the flag before the trigger starts.
                if not active:
                    raise
                run = None
            if run is not None and run.status.is_terminal:
                raise RunStateError(f"Run {run_id} already {run.status.value}", run_id=run_id, operation="cancel")

        self.executor.request_cancel(run_id)
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def _work(self) -> None:
        while True:
            try:
                item = self._queue.get(timeout=1.0)
            except Empty:
                if not self._running:
                    return
                continue

            if item is self._STOP:
                self._queue.task_done()
                return

            run_id, workflow, payload = item
            with self._lock:
                self._pending.discard(run_id)
                self._active.add(run_id)
            try:
                self.executor.execute(workflow, payload, run_id=run_id)
            except Exception as e:
                logger.error(f"Run {run_id} could not be executed: {str(e)}", exc_info=True)
            finally:
                with self._lock:
                    self._active.discard(run_id)
                    self.completed_runs += 1
                self._queue.task_done()

    def _sweep(self) -> None:
        max_age = timedelta(seconds=self.run_max_age_seconds)
        while not self._stop_event.wait(self.reconcile_interval_seconds):
            self.reconcile_once(max_age)

    def reconcile_once(self, max_age: Optional[timedelta] = None) -> List[str]:
        max_age = max_age or timedelta(seconds=self.run_max_age_seconds)
        try:
            reconciled = self.run_tracker.reconcile_stale_runs(max_age)
        except WorkflowEngineError as e:
            logger.error(f"Run reconciliation failed: {str(e)}")
            return []

        for run_id in reconciled:
            try:
                run = self.run_tracker.get_run(run_id, include_steps=False)
            except RunNotFoundError:
                continue
            self.executor.notify_completed(run.id, run.workflow_id, run.status, run.error)
        return reconciled

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "workers": self.worker_count,
                "queue_size": self._queue.qsize(),
                "queue_capacity": self.job_queue_size,
                "queued_runs": len(self._pending),
                "active_runs": sorted(self._active),
                "completed_runs": self.completed_runs,
                "rejected_runs": self.rejected_runs,
                "reconciliation_enabled": bool(self.run_max_age_seconds),
            }

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no run is queued or executing."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._pending and not self._active:
                    return True
            time.sleep(0.02)
        return False

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting work, drain the workers and stop the sweeper."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        for _ in self._workers:
            self._queue.put(self._STOP)
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers.clear()

        if self._sweeper and self._sweeper.is_alive():
            self._sweeper.join(timeout=timeout)
        self._sweeper = None

        self.executor.shutdown()
        logger.info("RunDispatcher shutdown completed")
