"""Timer-driven schedule trigger backed by APScheduler."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..core.exceptions import ResourceExhaustionError, TriggerValidationError, WorkflowEngineError
from ..core.logging import get_logger
from ..models.core import NodeDefinition, NodeKind, WorkflowDefinition
from .base import TriggerAdapter

logger = get_logger(__name__)

JOB_PREFIX = "workflow:"


def job_id_for(workflow_id: str, node_id: str) -> str:
    return f"{JOB_PREFIX}{workflow_id}:{node_id}"


def build_cron_trigger(pattern: Optional[str], timezone: str) -> CronTrigger:
    """
    Parse a five-field crontab pattern in ``timezone``.

    Raises:
        TriggerValidationError: INVALID_PAYLOAD for a missing or invalid pattern or timezone
    """
    if not pattern or not str(pattern).strip():
        raise TriggerValidationError("Schedule trigger has no cron pattern", error_code="INVALID_PAYLOAD")
    try:
        tz = pytz.timezone(timezone)
    except pytz.exceptions.UnknownTimeZoneError:
        raise TriggerValidationError(f"Unknown timezone: {timezone}", error_code="INVALID_PAYLOAD")
    try:
        return CronTrigger.from_crontab(str(pattern).strip(), timezone=tz)
    except ValueError as e:
        raise TriggerValidationError(f"Invalid cron pattern '{pattern}': {e}", error_code="INVALID_PAYLOAD")


class ScheduleTriggerAdapter(TriggerAdapter):
    """Keeps one cron job per schedule trigger node of every active workflow.

    Jobs fire on the scheduler's thread pool; each firing re-reads the workflow
    so deactivated or deleted workflows stop producing runs.
    """

    node_kind = NodeKind.TRIGGER_SCHEDULE
    source_type = "schedule"

    def __init__(self, repository, dispatcher, default_timezone: str = "America/New_York",
                 scheduler: Optional[BackgroundScheduler] = None):
        super().__init__(repository, dispatcher)
        self.default_timezone = default_timezone
        self.scheduler = scheduler or BackgroundScheduler(timezone=pytz.timezone(default_timezone))

    def _settings(self, workflow: WorkflowDefinition, node: NodeDefinition) -> Dict[str, str]:
        return {
            "pattern": node.data.get("pattern") or node.data.get("cronPattern") or workflow.schedule,
            "timezone": node.data.get("timezone") or self.default_timezone,
        }

    def schedule_workflow(self, workflow: WorkflowDefinition) -> List[str]:
        """
        (Re)create the jobs for a workflow's schedule nodes.

        Inactive workflows are unscheduled instead.

        Raises:
            TriggerValidationError: If a node's pattern or timezone is invalid
        """
        if not workflow.active:
            self.unschedule_workflow(workflow.id)
            return []

        triggers = []
        for node in workflow.trigger_nodes(self.node_kind):
            settings = self._settings(workflow, node)
            triggers.append((node, settings, build_cron_trigger(settings["pattern"], settings["timezone"])))

        self.unschedule_workflow(workflow.id)
        job_ids = []
        for node, settings, cron in triggers:
            job_id = job_id_for(workflow.id, node.id)
            self.scheduler.add_job(
                self._fire,
                trigger=cron,
                id=job_id,
                args=[workflow.id, node.id],
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=60,
            )
            job_ids.append(job_id)
            logger.info(f"Scheduled workflow {workflow.id} node {node.id}: "
                        f"'{settings['pattern']}' ({settings['timezone']})")
        return job_ids

    def unschedule_workflow(self, workflow_id: str) -> int:
        prefix = f"{JOB_PREFIX}{workflow_id}:"
        removed = 0
        for job in self.scheduler.get_jobs():
            if job.id.startswith(prefix):
                try:
                    self.scheduler.remove_job(job.id)
                    removed += 1
                except JobLookupError:
                    continue
        if removed:
            logger.info(f"Unscheduled {removed} jobs for workflow {workflow_id}")
        return removed

    def sync(self) -> int:
        """Make the job set match the active workflows; returns the job count."""
        wanted = set()
        for workflow in self.repository.find_by_trigger_kind(self.node_kind, active_only=True):
            try:
                wanted.update(self.schedule_workflow(workflow))
            except TriggerValidationError as e:
                logger.error(f"Cannot schedule workflow {workflow.id}: {e.message}")

        for job in self.scheduler.get_jobs():
            if job.id.startswith(JOB_PREFIX) and job.id not in wanted:
                self.scheduler.remove_job(job.id)
                logger.info(f"Removed stale schedule job {job.id}")
        return len(wanted)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Schedule trigger scheduler started")
        self.sync()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Schedule trigger scheduler stopped")

    def list_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(JOB_PREFIX):
                continue
            # pending jobs (scheduler not started) have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "workflow_id": job.args[0] if job.args else None,
                "node_id": job.args[1] if len(job.args) > 1 else None,
                "next_run_time": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    def status(self) -> Dict[str, Any]:
        """Scheduler state plus, per active schedule node, whether a job is in place."""
        jobs = self.list_jobs()
        job_ids = {job["id"] for job in jobs}

        scheduled = []
        for workflow in self.repository.find_by_trigger_kind(self.node_kind, active_only=True):
            for node in workflow.trigger_nodes(self.node_kind):
                settings = self._settings(workflow, node)
                scheduled.append({
                    "workflowId": workflow.id,
                    "name": workflow.name,
                    "nodeId": node.id,
                    "cronPattern": settings["pattern"],
                    "timezone": settings["timezone"],
                    "isScheduled": job_id_for(workflow.id, node.id) in job_ids,
                })

        return {
            "running": self.scheduler.running,
            "defaultTimezone": self.default_timezone,
            "jobCount": len(jobs),
            "jobs": jobs,
            "activeScheduledWorkflows": scheduled,
        }

    def _fire(self, workflow_id: str, node_id: str):
        """Job callback: admit one run unless the workflow went away."""
        try:
            workflow = self.resolve_workflow(workflow_id)
            node = self.locate_node(workflow, node_id)
        except TriggerValidationError as e:
            logger.info(f"Skipping schedule for workflow {workflow_id}: {e.error_code}")
            self.unschedule_workflow(workflow_id)
            return None

        settings = self._settings(workflow, node)
        data = {
            "scheduledAt": datetime.now(pytz.timezone(settings["timezone"])).isoformat(),
            "pattern": settings["pattern"],
            "timezone": settings["timezone"],
        }
        try:
            return self.admit(workflow, node, data, extra={"jobId": job_id_for(workflow_id, node_id)})
        except ResourceExhaustionError:
            logger.warning(f"Scheduled run for workflow {workflow_id} dropped: run queue full")
        except WorkflowEngineError as e:
            logger.error(f"Scheduled run for workflow {workflow_id} failed to start: {e.message}")
        return None
