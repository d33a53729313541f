"""Schema and index migrations for run storage."""

from sqlalchemy import inspect, text

from . import database
from ..core.logging import get_logger

logger = get_logger(__name__)

RUN_QUERY_INDEXES = [
    # paginated listing by status, newest first
    """CREATE INDEX IF NOT EXISTS idx_workflow_runs_status_started
       ON workflow_runs(status, started_at)""",
    # per-workflow history
    """CREATE INDEX IF NOT EXISTS idx_workflow_runs_workflow_started
       ON workflow_runs(workflow_id, started_at)""",
    """CREATE INDEX IF NOT EXISTS idx_run_steps_run
       ON run_steps(run_id, id)""",
]


def create_run_query_indexes():
    """Create indexes backing the run read operations and the reconciliation sweep."""
    engine = database.get_engine()
    with engine.connect() as connection:
        for statement in RUN_QUERY_INDEXES:
            connection.execute(text(statement))

        if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
            # WAL lets the run workers write while API requests read
            connection.execute(text("PRAGMA journal_mode=WAL"))

        connection.commit()
    logger.info("Run query indexes are in place")


def add_run_step_count():
    """Add the step counter that guards step appends on databases created before it existed."""
    engine = database.get_engine()
    columns = {column["name"] for column in inspect(engine).get_columns("workflow_runs")}
    if "step_count" in columns:
        return

    with engine.connect() as connection:
        connection.execute(text("ALTER TABLE workflow_runs ADD COLUMN step_count INTEGER NOT NULL DEFAULT 0"))
        connection.execute(text(
            "UPDATE workflow_runs SET step_count = "
            "(SELECT COUNT(*) FROM run_steps WHERE run_steps.run_id = workflow_runs.id)"
        ))
        connection.commit()
    logger.info("Added workflow_runs.step_count")


def run_migrations():
    """Run all migrations."""
    try:
        add_run_step_count()
        create_run_query_indexes()
    except Exception as e:
        logger.error(f"Migrations failed: {str(e)}")
        raise
