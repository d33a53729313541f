"""Tests for run lifecycle tracking and reconciliation."""

import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import event

from automation_engine.core.exceptions import RunNotFoundError, RunStateError
from automation_engine.models.core import RunStatus, StepRecord, StepStatus
from automation_engine.storage.database import get_engine


def step(node_id, status=StepStatus.SUCCESS, **kwargs):
    return StepRecord(node_id=node_id, node_type="action:echo", status=status, **kwargs)


class TestRunLifecycle:
    """RUNNING -> SUCCEEDED | FAILED, exactly once."""

    def test_create_run(self, run_tracker):
        run = run_tracker.create_run("wf-1", {"data": {"a": 1}})

        assert run.status == RunStatus.RUNNING
        assert run.workflow_id == "wf-1"
        assert run.finished_at is None
        assert run.trigger == {"data": {"a": 1}}

    def test_create_with_existing_id_rejected(self, run_tracker):
        run_tracker.create_run("wf-1", {}, run_id="fixed")
        with pytest.raises(RunStateError):
            run_tracker.create_run("wf-1", {}, run_id="fixed")

    def test_steps_append_in_order(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})
        first = run_tracker.append_step(run.id, step("a", result={"x": 1}))
        second = run_tracker.append_step(run.id, step("b", StepStatus.SKIPPED))

        assert second.sequence > first.sequence
        stored = run_tracker.get_run(run.id)
        assert [s.node_id for s in stored.steps] == ["a", "b"]
        assert stored.steps[0].result == {"x": 1}
        assert stored.steps[1].status == StepStatus.SKIPPED

    def test_finalize_sets_terminal_status_once(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})

        assert run_tracker.finalize(run.id, RunStatus.SUCCEEDED) is True
        finished = run_tracker.get_run(run.id)
        assert finished.status == RunStatus.SUCCEEDED
        assert finished.finished_at is not None

        assert run_tracker.finalize(run.id, RunStatus.FAILED, error={"reason": "late"}) is False
        again = run_tracker.get_run(run.id)
        assert again.status == RunStatus.SUCCEEDED
        assert again.finished_at == finished.finished_at
        assert again.error is None

    def test_finalize_to_running_is_illegal(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})
        with pytest.raises(RunStateError):
            run_tracker.finalize(run.id, RunStatus.RUNNING)

    def test_append_after_terminal_rejected_and_logged(self, run_tracker, caplog):
        run = run_tracker.create_run("wf-1", {})
        run_tracker.finalize(run.id, RunStatus.FAILED, error={"reason": "cancelled"})

        with pytest.raises(RunStateError) as exc_info:
            run_tracker.append_step(run.id, step("late"))

        assert exc_info.value.details["node_id"] == "late"
        assert "Rejected step for node late" in caplog.text
        assert run_tracker.get_run(run.id).steps == []

    def test_finalize_racing_an_append_leaves_no_step(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})
        appender = threading.get_ident()
        fired = []

        def finalize_before_first_write(conn, cursor, statement, parameters, context, executemany):
            if fired or threading.get_ident() != appender:
                return
            if statement.lstrip().upper().startswith(("UPDATE", "INSERT")):
                fired.append(statement)
                sweeper = threading.Thread(target=run_tracker.finalize, args=(run.id, RunStatus.FAILED),
                                           kwargs={"error": {"reason": "reconciled"}})
                sweeper.start()
                sweeper.join(10)

        engine = get_engine()
        event.listen(engine, "before_cursor_execute", finalize_before_first_write)
        try:
            with pytest.raises(RunStateError):
                run_tracker.append_step(run.id, step("late"))
        finally:
            event.remove(engine, "before_cursor_execute", finalize_before_first_write)

        assert fired
        stored = run_tracker.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.steps == []

    def test_unknown_run(self, run_tracker):
        with pytest.raises(RunNotFoundError):
            run_tracker.get_run("missing")
        with pytest.raises(RunNotFoundError):
            run_tracker.append_step("missing", step("a"))
        with pytest.raises(RunNotFoundError):
            run_tracker.finalize("missing", RunStatus.FAILED)


class TestRunQueries:
    def seed(self, run_tracker):
        ids = {}
        for i in range(5):
            run = run_tracker.create_run("wf-a", {"i": i})
            if i % 2 == 0:
                run_tracker.finalize(run.id, RunStatus.SUCCEEDED)
            ids[i] = run.id
        run_tracker.create_run("wf-b", {})
        return ids

    def test_list_by_workflow(self, run_tracker):
        self.seed(run_tracker)
        page = run_tracker.list_runs_for_workflow("wf-a")
        assert page.total == 5
        assert all(r.workflow_id == "wf-a" for r in page.items)

    def test_list_by_status(self, run_tracker):
        self.seed(run_tracker)
        assert run_tracker.list_runs(status=RunStatus.SUCCEEDED).total == 3
        assert run_tracker.list_runs(status=RunStatus.RUNNING).total == 3
        assert run_tracker.list_runs(workflow_id="wf-a", status=RunStatus.RUNNING).total == 2

    def test_pagination(self, run_tracker):
        self.seed(run_tracker)
        first = run_tracker.list_runs(page=1, page_size=4)
        second = run_tracker.list_runs(page=2, page_size=4)

        assert first.total == second.total == 6
        assert len(first.items) == 4
        assert len(second.items) == 2
        assert not {r.id for r in first.items} & {r.id for r in second.items}

    def test_page_size_is_capped(self, run_tracker):
        assert run_tracker.list_runs(page_size=10_000).page_size == 200
        assert run_tracker.list_runs(page=0).page == 1

    def test_count_runs(self, run_tracker):
        self.seed(run_tracker)
        assert run_tracker.count_runs() == 6
        assert run_tracker.count_runs("wf-b") == 1


class TestReconciliation:
    def test_stale_running_runs_are_failed(self, run_tracker):
        stale = run_tracker.create_run("wf-1", {})
        done = run_tracker.create_run("wf-1", {})
        run_tracker.finalize(done.id, RunStatus.SUCCEEDED)

        later = datetime.utcnow() + timedelta(hours=2)
        reconciled = run_tracker.reconcile_stale_runs(timedelta(hours=1), now=later)

        assert reconciled == [stale.id]
        run = run_tracker.get_run(stale.id)
        assert run.status == RunStatus.FAILED
        assert run.error["reason"] == "reconciled"
        assert run_tracker.get_run(done.id).status == RunStatus.SUCCEEDED

    def test_young_runs_untouched(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})
        assert run_tracker.reconcile_stale_runs(timedelta(hours=1)) == []
        assert run_tracker.get_run(run.id).status == RunStatus.RUNNING

    def test_reconciled_run_rejects_steps(self, run_tracker):
        run = run_tracker.create_run("wf-1", {})
        run_tracker.reconcile_stale_runs(timedelta(seconds=1), now=datetime.utcnow() + timedelta(minutes=5))

        with pytest.raises(RunStateError):
            run_tracker.append_step(run.id, step("a"))

    def test_max_age_must_be_positive(self, run_tracker):
        with pytest.raises(ValueError):
            run_tracker.reconcile_stale_runs(timedelta(0))
