"""Run lifecycle tracking and persistence.

A run moves RUNNING -> SUCCEEDED or RUNNING -> FAILED exactly once. Steps are
appended only while the run is RUNNING. The terminal transition is a
conditional UPDATE on the RUNNING status, so it stays exactly-once even when
several workers or instances race to finalize the same run.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import RunPage, RunStatus, StepRecord, StepStatus, WorkflowRun
from ..storage.database import get_db
from ..storage.models import StepModel, WorkflowRunModel
from .error_recovery import RetryConfig, classify_storage_error, with_retry
from .exceptions import RunNotFoundError, RunStateError, StorageError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 200

_storage_retry = RetryConfig(max_attempts=3, retryable_exceptions=[StorageError, TransientError])


class RunTracker:
    """Owns run and step records."""

    @with_retry(_storage_retry)
    def create_run(self, workflow_id: str, trigger_snapshot: Dict[str, Any],
                   run_id: Optional[str] = None) -> WorkflowRun:
        """
        Create a run in RUNNING status.

        Args:
            workflow_id: Workflow being executed
            trigger_snapshot: Canonical trigger payload that started the run
            run_id: Pre-assigned run id (dispatch assigns one at admission)

        Returns:
            The created run

        Raises:
            RunStateError: If the run id already exists
            StorageError: If database operations fail
        """
        run_id = run_id or str(uuid.uuid4())
        db = next(get_db())
        try:
            if db.get(WorkflowRunModel, run_id) is not None:
                raise RunStateError(f"Run {run_id} already exists", run_id=run_id, operation="create_run")

            run_model = WorkflowRunModel(
                id=run_id,
                workflow_id=workflow_id,
                status=RunStatus.RUNNING.value,
                trigger_snapshot=trigger_snapshot,
                started_at=datetime.utcnow(),
            )
            db.add(run_model)
            db.commit()
            db.refresh(run_model)

            logger.info(f"Created run {run_id} for workflow {workflow_id}")
            return self._to_run(run_model, include_steps=False)

        except SQLAlchemyError as e:
            db.rollback()
            raise classify_storage_error(e, "create_run", "workflow_runs")
        finally:
            db.close()

    @with_retry(_storage_retry)
    def append_step(self, run_id: str, step: StepRecord) -> StepRecord:
        """
        Append a step to a RUNNING run.

        Args:
            run_id: Run to append to
            step: Step outcome

        Returns:
            The stored step with its sequence number

        Raises:
            RunNotFoundError: If the run does not exist
            RunStateError: If the run is already terminal; the attempt is logged
            StorageError: If database operations fail
        """
        db = next(get_db())
        try:
            # Guard and insert share one transaction, so a concurrent finalize
            # either sees this step or makes the guard match nothing.
            guard = db.execute(
                update(WorkflowRunModel)
                .where(WorkflowRunModel.id == run_id)
                .where(WorkflowRunModel.status == RunStatus.RUNNING.value)
                .values(step_count=WorkflowRunModel.step_count + 1)
            )
            if guard.rowcount != 1:
                db.rollback()
                run_model = db.get(WorkflowRunModel, run_id)
                if run_model is None:
                    raise RunNotFoundError(run_id)
                logger.error(
                    f"Rejected step for node {step.node_id} on run {run_id}: run is already {run_model.status}"
                )
                raise RunStateError(
                    f"Run {run_id} is {run_model.status}; steps can no longer be appended",
                    run_id=run_id,
                    operation="append_step",
                ).add_details(node_id=step.node_id, step_status=step.status.value)

            step_model = StepModel(
                run_id=run_id,
                node_id=step.node_id,
                node_type=step.node_type,
                status=step.status.value,
                result=step.result,
                error=step.error,
                started_at=step.started_at,
                completed_at=step.completed_at,
            )
            db.add(step_model)
            db.commit()

            logger.debug(f"Appended {step.status.value} step for node {step.node_id} to run {run_id}")
            return step.model_copy(update={"sequence": step_model.id})

        except SQLAlchemyError as e:
            db.rollback()
            raise classify_storage_error(e, "append_step", "run_steps")
        finally:
            db.close()

    @with_retry(_storage_retry)
    def finalize(self, run_id: str, status: RunStatus, error: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move a run to a terminal status.

        Args:
            run_id: Run to finalize
            status: SUCCEEDED or FAILED
            error: Failure description stored on the run

        Returns:
            True if this call performed the transition, False if the run was
            already terminal (idempotent no-op)

        Raises:
            RunStateError: If ``status`` is not terminal
            RunNotFoundError: If the run does not exist
            StorageError: If database operations fail
        """
        if not status.is_terminal:
            raise RunStateError(f"Cannot finalize run {run_id} as {status.value}", run_id=run_id, operation="finalize")

        db = next(get_db())
        try:
            result = db.execute(
                update(WorkflowRunModel)
                .where(WorkflowRunModel.id == run_id)
                .where(WorkflowRunModel.status == RunStatus.RUNNING.value)
                .values(status=status.value, finished_at=datetime.utcnow(), error=error)
            )
            db.commit()

            if result.rowcount == 1:
                logger.info(f"Run {run_id} finalized as {status.value}")
                return True

            if db.get(WorkflowRunModel, run_id) is None:
                raise RunNotFoundError(run_id)

            logger.debug(f"Run {run_id} already terminal; finalize({status.value}) ignored")
            return False

        except SQLAlchemyError as e:
            db.rollback()
            raise classify_storage_error(e, "finalize", "workflow_runs")
        finally:
            db.close()

    def get_run(self, run_id: str, include_steps: bool = True) -> WorkflowRun:
        """
        Get a run by id.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        db = next(get_db())
        try:
            run_model = db.get(WorkflowRunModel, run_id)
            if run_model is None:
                raise RunNotFoundError(run_id)
            return self._to_run(run_model, include_steps=include_steps)
        except SQLAlchemyError as e:
            raise classify_storage_error(e, "get_run", "workflow_runs")
        finally:
            db.close()

    def list_runs(self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  page: int = 1, page_size: int = 50, include_steps: bool = False) -> RunPage:
        """
        List runs newest first, optionally filtered by workflow and status.

        Args:
            workflow_id: Restrict to one workflow
            status: Restrict to one status
            page: 1-based page number
            page_size: Items per page (capped)
        """
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        db = next(get_db())
        try:
            query = db.query(WorkflowRunModel)
            if workflow_id:
                query = query.filter(WorkflowRunModel.workflow_id == workflow_id)
            if status:
                query = query.filter(WorkflowRunModel.status == status.value)

            total = query.with_entities(func.count(WorkflowRunModel.id)).scalar() or 0
            models = (
                query.order_by(WorkflowRunModel.started_at.desc(), WorkflowRunModel.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return RunPage(
                items=[self._to_run(m, include_steps=include_steps) for m in models],
                total=total,
                page=page,
                page_size=page_size,
            )
        except SQLAlchemyError as e:
            raise classify_storage_error(e, "list_runs", "workflow_runs")
        finally:
            db.close()

    def list_runs_for_workflow(self, workflow_id: str, status: Optional[RunStatus] = None,
                               page: int = 1, page_size: int = 50) -> RunPage:
        return self.list_runs(workflow_id=workflow_id, status=status, page=page, page_size=page_size)

    def count_runs(self, workflow_id: Optional[str] = None) -> int:
        return self.list_runs(workflow_id=workflow_id, page_size=1).total

    def reconcile_stale_runs(self, max_age: timedelta, now: Optional[datetime] = None) -> List[str]:
        """
        Force-fail RUNNING runs that started more than ``max_age`` ago.

        The caller chooses ``max_age``; there is no built-in default.

        Returns:
            Ids of the runs this sweep finalized
        """
        if max_age.total_seconds() <= 0:
            raise ValueError("max_age must be positive")

        cutoff = (now or datetime.utcnow()) - max_age
        db = next(get_db())
        try:
            stale_ids = [
                row.id for row in
                db.query(WorkflowRunModel.id)
                .filter(WorkflowRunModel.status == RunStatus.RUNNING.value)
                .filter(WorkflowRunModel.started_at < cutoff)
                .all()
            ]
        finally:
            db.close()

        reconciled = []
        for run_id in stale_ids:
            error = {
                "reason": "reconciled",
                "message": f"Run exceeded maximum age of {int(max_age.total_seconds())}s without finishing",
            }
            if self.finalize(run_id, RunStatus.FAILED, error=error):
                reconciled.append(run_id)

        if reconciled:
            logger.warning(f"Reconciliation force-failed {len(reconciled)} stale runs: {', '.join(reconciled)}")
        return reconciled

    @staticmethod
    def _to_run(run_model: WorkflowRunModel, include_steps: bool = True) -> WorkflowRun:
        steps = []
        if include_steps:
            steps = [
                StepRecord(
                    node_id=s.node_id,
                    node_type=s.node_type,
                    status=StepStatus(s.status),
                    result=s.result,
                    error=s.error,
                    started_at=s.started_at,
                    completed_at=s.completed_at,
                    sequence=s.id,
                )
                for s in run_model.steps
            ]
        return WorkflowRun(
            id=run_model.id,
            workflow_id=run_model.workflow_id,
            status=RunStatus(run_model.status),
            started_at=run_model.started_at,
            finished_at=run_model.finished_at,
            trigger=run_model.trigger_snapshot or {},
            error=run_model.error,
            steps=steps,
        )
