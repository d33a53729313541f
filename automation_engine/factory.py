"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Dict, Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.error_recovery import health_checker
from .core.execution_engine import GraphExecutor, RunDispatcher
from .core.handler_registry import HandlerRegistry, build_default_registry
from .core.kv_store import KeyValueStore, build_kv_store
from .core.logging import setup_logging, get_logger
from .core.realtime_publisher import RealtimePublisher
from .core.run_tracker import RunTracker
from .core.security_gate import SecurityGate
from .core.workflow_repository import WorkflowRepository
from .storage.database import configure_database, create_tables, get_db
from .triggers import (
    DatabaseChangeAdapter, EmailTriggerAdapter, FileTriggerAdapter, FormTriggerAdapter,
    ManualRunAdapter, ScheduleTriggerAdapter, WebhookTriggerAdapter
)
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[HandlerRegistry] = None
        self.kv_store: Optional[KeyValueStore] = None
        self.run_tracker: Optional[RunTracker] = None
        self.repository: Optional[WorkflowRepository] = None
        self.publisher: Optional[RealtimePublisher] = None
        self.executor: Optional[GraphExecutor] = None
        self.dispatcher: Optional[RunDispatcher] = None
        self.adapters: Dict[str, object] = {}
        self.database_adapter: Optional[DatabaseChangeAdapter] = None
        self.scheduler: Optional[ScheduleTriggerAdapter] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def setup_health_checks(state: ApplicationState, logger) -> None:
    """Register component health checks."""
    health_checker.clear()

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
            return {"status": "healthy", "message": "Database connection successful"}
        finally:
            db.close()

    def check_dispatcher():
        status = state.dispatcher.get_status()
        if not status["running"]:
            raise RuntimeError("Run dispatcher is not running")
        return {
            "status": "healthy",
            "message": "Run dispatcher operational",
            "queue_size": status["queue_size"],
            "queue_capacity": status["queue_capacity"],
            "active_runs": len(status["active_runs"]),
        }

    def check_kv_store():
        if not state.kv_store.ping():
            raise RuntimeError("Key-value store did not answer")
        return {"status": "healthy", "backend": state.config.kv_backend.value}

    def check_publisher():
        return {
            "status": "healthy",
            "pending_events": state.publisher.pending,
            **state.publisher.get_connection_info(),
        }

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("dispatcher", check_dispatcher, timeout=2.0)
    health_checker.register_check("kv_store", check_kv_store, timeout=3.0)
    health_checker.register_check("publisher", check_publisher, timeout=2.0)

    if state.scheduler is not None:
        def check_scheduler():
            if not state.scheduler.scheduler.running:
                raise RuntimeError("Scheduler is not running")
            return {"status": "healthy", "jobs": len(state.scheduler.list_jobs())}

        health_checker.register_check("scheduler", check_scheduler, timeout=2.0)

    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Initialize database and run migrations."""
    try:
        configure_database(config.database_url, echo=config.database_echo)
        create_tables()
        logger.info("Database tables created")

        from .storage.migrations import add_run_step_count, create_run_query_indexes
        add_run_step_count()

        try:
            create_run_query_indexes()
            logger.info("Database migrations completed")
        except Exception as e:
            # Indexes only; the service works without them
            logger.warning(f"Database migrations failed: {str(e)}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, logger) -> ApplicationState:
    """Build the engine, its stores and the trigger adapters."""
    state = ApplicationState()
    state.config = config
    state.logger = logger

    state.registry = build_default_registry()
    state.kv_store = build_kv_store(config.kv_backend.value, config.redis_url)
    state.run_tracker = RunTracker()
    state.repository = WorkflowRepository()
    state.publisher = RealtimePublisher()
    state.executor = GraphExecutor(
        run_tracker=state.run_tracker,
        registry=state.registry,
        kv_store=state.kv_store,
        publisher=state.publisher,
        node_worker_count=config.node_worker_count,
        default_node_timeout=config.default_node_timeout,
    )
    state.dispatcher = RunDispatcher(
        executor=state.executor,
        run_tracker=state.run_tracker,
        worker_count=config.worker_count,
        job_queue_size=config.job_queue_size,
        run_max_age_seconds=config.run_max_age_seconds,
        reconcile_interval_seconds=config.reconcile_interval_seconds,
    )

    gate = SecurityGate()
    state.adapters = {
        "form": FormTriggerAdapter(state.repository, state.dispatcher, gate),
        "file": FileTriggerAdapter(state.repository, state.dispatcher, gate,
                                   default_max_size=config.max_upload_size),
        "email": EmailTriggerAdapter(state.repository, state.dispatcher, gate),
        "webhook": WebhookTriggerAdapter(state.repository, state.dispatcher, gate),
        "manual": ManualRunAdapter(state.repository, state.dispatcher, gate),
    }
    state.database_adapter = DatabaseChangeAdapter(state.repository, state.dispatcher)
    if config.enable_scheduler:
        state.scheduler = ScheduleTriggerAdapter(
            state.repository, state.dispatcher, default_timezone=config.schedule_default_timezone
        )

    logger.info("Core components initialized")
    return state


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name}")

    if state.scheduler is not None:
        try:
            state.scheduler.shutdown()
        except Exception as e:
            logger.error(f"Error stopping scheduler: {str(e)}")

    try:
        state.dispatcher.shutdown()
    except Exception as e:
        logger.error(f"Error during dispatcher shutdown: {str(e)}")

    try:
        state.publisher.stop()
        logger.info("Run event publisher stopped")
    except Exception as e:
        logger.error(f"Error stopping run event publisher: {str(e)}")


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            state = initialize_core_components(config, logger)

            app_state.__dict__.update(state.__dict__)
            app.state.components = state

            init_dependencies(
                repository=state.repository,
                run_tracker=state.run_tracker,
                dispatcher=state.dispatcher,
                publisher=state.publisher,
                adapters=state.adapters,
                scheduler=state.scheduler,
            )

            state.publisher.start()
            state.dispatcher.start()
            if state.scheduler is not None:
                state.scheduler.start()

            setup_health_checks(state, logger)
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        try:
            graceful_shutdown(state, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Event-driven workflow automation engine: triggers, graph execution and run history",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_request_middleware:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            RequestLoggingMiddleware,
            PerformanceMonitoringMiddleware
        )

        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Component status for every registered check."""
        try:
            results = await health_checker.run_all_checks()
            status_code = 200 if results["overall_status"] == "healthy" else 503
            return JSONResponse(
                status_code=status_code,
                content={"service": service, "version": config.app_version, **results}
            )
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

    @app.get("/health/ready")
    async def readiness_check():
        """Ready once the database answers and the dispatcher is running."""
        try:
            results = {}
            for check_name in ("database", "dispatcher"):
                if check_name in health_checker.checks:
                    results[check_name] = await health_checker.run_check(check_name)

            ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())
            return JSONResponse(
                status_code=200 if ready else 503,
                content={"ready": ready, "checks": results, "timestamp": datetime.utcnow().isoformat()}
            )
        except Exception as e:
            get_logger(__name__).error(f"Readiness check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={"ready": False, "error": str(e), "timestamp": datetime.utcnow().isoformat()}
            )

    @app.get("/health/live")
    async def liveness_check():
        return {"alive": True, "timestamp": datetime.utcnow().isoformat()}


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
