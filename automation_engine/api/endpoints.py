"""FastAPI endpoints for triggers, test runs, runs, workflow registration and run events."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from ..core.exceptions import WorkflowDefinitionError, WorkflowEngineError, create_error_response
from ..core.execution_engine import RunDispatcher
from ..core.logging import get_logger
from ..core.realtime_publisher import RealtimePublisher
from ..core.run_tracker import RunTracker
from ..core.workflow_repository import WorkflowRepository
from ..models.core import NodeKind, RunStatus, TriggerAcknowledgement, WorkflowDefinition
from ..triggers import (
    EmailTriggerAdapter, FileTriggerAdapter, FormTriggerAdapter, ManualRunAdapter, ScheduleTriggerAdapter,
    WebhookTriggerAdapter
)
from ..triggers.schedule import build_cron_trigger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["automation"])

# Initialized by the application factory
_repository: Optional[WorkflowRepository] = None
_run_tracker: Optional[RunTracker] = None
_dispatcher: Optional[RunDispatcher] = None
_publisher: Optional[RealtimePublisher] = None
_adapters: Dict[str, Any] = {}
_scheduler: Optional[ScheduleTriggerAdapter] = None


def init_dependencies(
    repository: WorkflowRepository,
    run_tracker: RunTracker,
    dispatcher: RunDispatcher,
    publisher: Optional[RealtimePublisher] = None,
    adapters: Optional[Dict[str, Any]] = None,
    scheduler: Optional[ScheduleTriggerAdapter] = None,
):
    """Initialize the global dependencies."""
    global _repository, _run_tracker, _dispatcher, _publisher, _adapters, _scheduler
    _repository = repository
    _run_tracker = run_tracker
    _dispatcher = dispatcher
    _publisher = publisher
    _adapters = dict(adapters or {})
    _scheduler = scheduler


def _not_ready(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "SERVICE_UNAVAILABLE", "message": f"{component} not initialized"}
    )


def get_repository() -> WorkflowRepository:
    if _repository is None:
        raise _not_ready("Workflow repository")
    return _repository


def get_run_tracker() -> RunTracker:
    if _run_tracker is None:
        raise _not_ready("Run tracker")
    return _run_tracker


def get_dispatcher() -> RunDispatcher:
    if _dispatcher is None:
        raise _not_ready("Run dispatcher")
    return _dispatcher


def _adapter(source_type: str):
    def dependency():
        adapter = _adapters.get(source_type)
        if adapter is None:
            raise _not_ready(f"{source_type} trigger")
        return adapter
    return dependency


def _http_error(error: WorkflowEngineError) -> HTTPException:
    headers = None
    if error.http_status == 503 and error.retry_after:
        headers = {"Retry-After": str(error.retry_after)}
    return HTTPException(status_code=error.http_status, detail=create_error_response(error), headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _acknowledge(ack: TriggerAcknowledgement) -> Dict[str, Any]:
    return ack.model_dump(mode="json", by_alias=True, exclude_none=True)


def _parse_status(value: Optional[str]) -> Optional[RunStatus]:
    if not value:
        return None
    try:
        return RunStatus(value.upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "INVALID_PAYLOAD", "message": f"Unknown run status: {value}"}
        )


# Trigger endpoints

@router.post(
    "/triggers/form/{workflow_id}",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a form to a workflow"
)
async def submit_form(
    workflow_id: str,
    request: Request,
    token: Optional[str] = Query(None),
    trigger_node_id: Optional[str] = Query(None),
    adapter: FormTriggerAdapter = Depends(_adapter("form")),
) -> Dict[str, Any]:
    """Accepts a JSON object or a url-encoded form; the run starts in the background."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        body: Any = {key: value for key, value in form.items() if isinstance(value, str)}
    else:
        raw = await request.body()
        try:
            body = json.loads(raw) if raw else {}
        except ValueError:
            body = None

    try:
        ack = adapter.handle(workflow_id, body, query_token=token, source_ip=_client_ip(request),
                             trigger_node_id=trigger_node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _acknowledge(ack)


@router.post(
    "/triggers/file/{workflow_id}",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a file to a workflow"
)
async def upload_file(
    workflow_id: str,
    request: Request,
    token: Optional[str] = Query(None),
    trigger_node_id: Optional[str] = Query(None),
    adapter: FileTriggerAdapter = Depends(_adapter("file")),
) -> Dict[str, Any]:
    filename, content, mimetype, fields = None, None, None, {}

    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" in content_type:
        form = await request.form()
        upload = form.get("file")
        if isinstance(upload, UploadFile):
            filename = upload.filename
            mimetype = upload.content_type
            content = await upload.read()
        fields = {key: value for key, value in form.items() if key != "file" and isinstance(value, str)}

    try:
        ack = adapter.handle(
            workflow_id, filename, content, mimetype=mimetype, fields=fields, headers=request.headers,
            query_token=token, source_ip=_client_ip(request), trigger_node_id=trigger_node_id
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _acknowledge(ack)


@router.post(
    "/triggers/email/{workflow_id}",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver a signed inbound email"
)
async def receive_email(
    workflow_id: str,
    request: Request,
    trigger_node_id: Optional[str] = Query(None),
    adapter: EmailTriggerAdapter = Depends(_adapter("email")),
) -> Dict[str, Any]:
    raw = await request.body()
    try:
        ack = adapter.handle(workflow_id, raw, request.headers, source_ip=_client_ip(request),
                             trigger_node_id=trigger_node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _acknowledge(ack)


@router.post(
    "/triggers/webhook/{workflow_id}",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver a generic webhook"
)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    trigger_node_id: Optional[str] = Query(None),
    adapter: WebhookTriggerAdapter = Depends(_adapter("webhook")),
) -> Dict[str, Any]:
    raw = await request.body()
    try:
        body: Any = json.loads(raw) if raw else {}
    except ValueError:
        body = raw.decode("utf-8", "replace")

    query = {key: value for key, value in request.query_params.items() if key != "trigger_node_id"}
    try:
        ack = adapter.handle(workflow_id, body, request.headers, query=query, source_ip=_client_ip(request),
                             trigger_node_id=trigger_node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _acknowledge(ack)


# Run queries

@router.get("/runs/{run_id}", summary="Get a run with its steps")
async def get_run(run_id: str, run_tracker: RunTracker = Depends(get_run_tracker)) -> Dict[str, Any]:
    try:
        return run_tracker.get_run(run_id).model_dump(mode="json")
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/runs", summary="List runs")
async def list_runs(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    run_tracker: RunTracker = Depends(get_run_tracker),
) -> Dict[str, Any]:
    try:
        return run_tracker.list_runs(status=_parse_status(status_filter), page=page,
                                     page_size=page_size).model_dump(mode="json")
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}/runs", summary="List runs of a workflow")
async def list_workflow_runs(
    workflow_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    run_tracker: RunTracker = Depends(get_run_tracker),
) -> Dict[str, Any]:
    try:
        return run_tracker.list_runs_for_workflow(
            workflow_id, status=_parse_status(status_filter), page=page, page_size=page_size
        ).model_dump(mode="json")
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/cancel", status_code=status.HTTP_202_ACCEPTED, summary="Cancel a run")
async def cancel_run(run_id: str, dispatcher: RunDispatcher = Depends(get_dispatcher)) -> Dict[str, Any]:
    """Cancellation is cooperative: the node in flight finishes, nothing after it starts."""
    try:
        dispatcher.cancel_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"run_id": run_id, "cancelled": True, "message": f"Cancellation requested for run {run_id}"}


# Workflow registration

def _validate_schedules(workflow: WorkflowDefinition) -> None:
    default_tz = _scheduler.default_timezone if _scheduler else "America/New_York"
    for node in workflow.trigger_nodes(NodeKind.TRIGGER_SCHEDULE):
        build_cron_trigger(
            node.data.get("pattern") or node.data.get("cronPattern") or workflow.schedule,
            node.data.get("timezone") or default_tz,
        )


def _resync(workflow: WorkflowDefinition) -> None:
    if _scheduler is not None and workflow.trigger_nodes(NodeKind.TRIGGER_SCHEDULE):
        _scheduler.schedule_workflow(workflow)
    elif _scheduler is not None:
        _scheduler.unschedule_workflow(workflow.id)


@router.post("/workflows", status_code=status.HTTP_201_CREATED, summary="Register a workflow")
async def create_workflow(
    document: Dict[str, Any],
    repository: WorkflowRepository = Depends(get_repository),
) -> Dict[str, Any]:
    try:
        try:
            workflow = WorkflowDefinition.model_validate(document)
        except ValidationError as e:
            raise WorkflowDefinitionError(f"Invalid workflow: {e.error_count()} errors").add_details(
                errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            )
        _validate_schedules(workflow)
        stored = repository.create_workflow(workflow)
        _resync(stored)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return stored.model_dump(mode="json", by_alias=True)


@router.get("/workflows", summary="List workflows")
async def list_workflows(
    active_only: bool = Query(False),
    repository: WorkflowRepository = Depends(get_repository),
) -> List[Dict[str, Any]]:
    try:
        return [wf.model_dump(mode="json", by_alias=True) for wf in repository.list_workflows(active_only)]
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}", summary="Get a workflow")
async def get_workflow(workflow_id: str, repository: WorkflowRepository = Depends(get_repository)) -> Dict[str, Any]:
    try:
        return repository.get_workflow(workflow_id).model_dump(mode="json", by_alias=True)
    except WorkflowEngineError as e:
        raise _http_error(e)


async def _set_active(workflow_id: str, active: bool, repository: WorkflowRepository) -> Dict[str, Any]:
    try:
        workflow = repository.set_active(workflow_id, active)
        _resync(workflow)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return workflow.model_dump(mode="json", by_alias=True)


@router.post("/workflows/{workflow_id}/activate", summary="Activate a workflow")
async def activate_workflow(workflow_id: str, repository: WorkflowRepository = Depends(get_repository)):
    return await _set_active(workflow_id, True, repository)


@router.post("/workflows/{workflow_id}/deactivate", summary="Deactivate a workflow")
async def deactivate_workflow(workflow_id: str, repository: WorkflowRepository = Depends(get_repository)):
    return await _set_active(workflow_id, False, repository)


@router.post(
    "/workflows/{workflow_id}/test",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a test run of a workflow"
)
async def start_test_run(
    workflow_id: str,
    request: Request,
    trigger_node_id: Optional[str] = Query(None),
    adapter: ManualRunAdapter = Depends(_adapter("manual")),
) -> Dict[str, Any]:
    """The JSON body becomes the trigger data; inactive workflows can be tested too."""
    raw = await request.body()
    try:
        data: Any = json.loads(raw) if raw else {}
    except ValueError:
        data = raw.decode("utf-8", "replace")

    try:
        ack = adapter.handle(workflow_id, data, trigger_node_id=trigger_node_id, source_ip=_client_ip(request))
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _acknowledge(ack)


@router.get("/schedules", summary="List scheduled trigger jobs")
async def list_schedules() -> List[Dict[str, Any]]:
    if _scheduler is None:
        return []
    return _scheduler.list_jobs()


@router.get("/schedules/status", summary="Scheduler state and schedule coverage")
async def scheduler_status() -> Dict[str, Any]:
    if _scheduler is None:
        return {"running": False, "enabled": False, "jobCount": 0, "jobs": [], "activeScheduledWorkflows": []}
    try:
        return {"enabled": True, **_scheduler.status()}
    except WorkflowEngineError as e:
        raise _http_error(e)


# Run event stream

@router.websocket("/ws/runs")
async def run_events(websocket: WebSocket):
    """
    Stream canonical run events.

    Client messages: ``{"action": "subscribe" | "unsubscribe" | "ping", "run_id"?, "workflow_id"?}``.
    Server messages are ``runCreated`` / ``stepCompleted`` / ``runCompleted`` events
    plus acknowledgements.
    """
    if _publisher is None:
        await websocket.close(code=1011, reason="Run events not available")
        return

    connection_id = None
    try:
        connection_id = await _publisher.connect(websocket)

        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                await _publisher.send(connection_id, {"event": "error", "message": "Invalid JSON message format"})
                continue
            if not isinstance(message, dict):
                await _publisher.send(connection_id, {"event": "error", "message": "Messages must be objects"})
                continue

            action = message.get("action")
            run_id = message.get("run_id")
            workflow_id = message.get("workflow_id")

            if action == "subscribe" and (run_id or workflow_id):
                await _publisher.subscribe(connection_id, run_id=run_id, workflow_id=workflow_id)
            elif action == "unsubscribe" and (run_id or workflow_id):
                await _publisher.unsubscribe(connection_id, run_id=run_id, workflow_id=workflow_id)
                await _publisher.send(connection_id, {"event": "unsubscribed", "runId": run_id,
                                                      "workflowId": workflow_id})
            elif action == "ping":
                await _publisher.send(connection_id, {"event": "pong", "timestamp": datetime.utcnow().isoformat()})
            else:
                await _publisher.send(connection_id, {"event": "error", "message": f"Unknown action: {action}"})

    except WebSocketDisconnect:
        logger.info(f"Run event client disconnected: {connection_id}")
    finally:
        if connection_id:
            await _publisher.disconnect(connection_id)
