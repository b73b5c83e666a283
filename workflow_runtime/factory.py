"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import create_engine, text

from .config import AppConfig, get_config, validate_config
from .core.error_recovery import HealthChecker
from .core.execution_store import ExecutionStore
from .core.job_queue import JobQueue
from .core.logging import setup_logging, get_logger
from .core.node_registry import NodeRegistry
from .core.notifier import CompositeNotifier, LoggingNotifier, WebSocketNotifier
from .core.run_service import RunService
from .core.workflow_store import WorkflowStore
from .models.core import utcnow
from .nodes import build_default_registry
from .storage.database import configure_database, create_tables, get_db
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.node_registry: Optional[NodeRegistry] = None
        self.workflow_store: Optional[WorkflowStore] = None
        self.execution_store: Optional[ExecutionStore] = None
        self.job_queue: Optional[JobQueue] = None
        self.websocket_notifier: Optional[WebSocketNotifier] = None
        self.run_service: Optional[RunService] = None
        self.health_checker: Optional[HealthChecker] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def build_node_registry(config: AppConfig) -> NodeRegistry:
    """Default registry; database nodes get their own engine when one is configured."""
    connector_engine = create_engine(config.connector_database_url) if config.connector_database_url else None
    return build_default_registry(database_engine=connector_engine, http_timeout=config.http_timeout)


def setup_health_checks(health_checker: HealthChecker, state: ApplicationState, logger) -> None:
    """Register health check functions for each component."""

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"message": "Database connection successful"}

    def check_job_queue():
        stats = state.job_queue.get_stats()
        return {
            "message": "Job queue operational",
            "active_jobs": sum(lane["active"] for lane in stats.values()),
            "waiting_jobs": sum(lane["waiting"] for lane in stats.values()),
        }

    def check_node_registry():
        return {
            "message": "Node registry operational",
            "registered_node_types": len(state.node_registry.list_handlers())
        }

    def check_websocket_notifier():
        return {
            "message": "WebSocket notifier operational",
            **state.websocket_notifier.get_connection_info()
        }

    timeout = state.config.health_check_timeout
    health_checker.register_check("database", check_database, timeout=timeout)
    health_checker.register_check("job_queue", check_job_queue, timeout=timeout)
    health_checker.register_check("node_registry", check_node_registry, timeout=timeout)
    health_checker.register_check("websocket_notifier", check_websocket_notifier, timeout=timeout)
    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the session factory to the configured database and create tables."""
    try:
        configure_database(config.database_url, echo=config.database_echo)
        create_tables()
        logger.info("Database tables created")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, node_registry: Optional[NodeRegistry], logger) -> ApplicationState:
    """Build the runtime components and wire them together."""
    state = ApplicationState()
    state.config = config
    state.logger = logger
    state.node_registry = node_registry or build_node_registry(config)
    state.workflow_store = WorkflowStore()
    state.execution_store = ExecutionStore()
    state.job_queue = JobQueue(config.lanes)
    state.websocket_notifier = WebSocketNotifier(max_connections=config.websocket_max_connections)
    state.run_service = RunService(
        state.workflow_store,
        state.execution_store,
        state.node_registry,
        state.job_queue,
        notifier=CompositeNotifier([LoggingNotifier(), state.websocket_notifier]),
        strict_condition_branching=config.strict_condition_branching
    )
    state.health_checker = HealthChecker()

    logger.info("Core components initialized")
    return state


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Stop broadcasting and drain the job queue."""
    logger.info(f"Shutting down {state.config.app_name}")

    try:
        state.websocket_notifier.stop_broadcast_processor()
    except Exception as e:
        logger.error(f"Error stopping WebSocket broadcast processor: {str(e)}")

    try:
        state.job_queue.shutdown(wait=True, timeout=state.config.queue_shutdown_timeout)
        logger.info("Job queue shutdown completed")
    except Exception as e:
        logger.error(f"Error during job queue shutdown: {str(e)}")


def create_lifespan_handler(config: AppConfig, node_registry: Optional[NodeRegistry] = None,
                            configure_logging: bool = True):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logging:
            setup_logging(
                level=config.log_level.value,
                log_file=config.log_file,
                log_format=config.log_format,
                structured=config.log_structured,
                max_size=config.log_max_size,
                backup_count=config.log_backup_count
            )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            state = initialize_core_components(config, node_registry, logger)

            init_dependencies(
                execution_store=state.execution_store,
                run_service=state.run_service,
                job_queue=state.job_queue,
                node_registry=state.node_registry,
                websocket_notifier=state.websocket_notifier
            )
            setup_health_checks(state.health_checker, state, logger)

            state.run_service.start()
            state.websocket_notifier.start_broadcast_processor()

            app_state.__dict__.update(state.__dict__)
            app.state.runtime = state
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        graceful_shutdown(state, logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None, node_registry: Optional[NodeRegistry] = None,
               configure_logging: bool = True) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    ``node_registry`` replaces the default registry, which is how callers
    inject connector clients (HTTP session, LLM client, message senders).
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Queue-backed runtime that executes node-graph workflows and reports their progress",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, node_registry, configure_logging)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        health_checker = app_state.health_checker
        if health_checker is None:
            return JSONResponse(
                status_code=503,
                content={"service": service_name, "overall_status": "starting", "timestamp": utcnow().isoformat()}
            )

        results = await health_checker.run_all_checks()
        return JSONResponse(
            status_code=200 if results["overall_status"] == "healthy" else 503,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check for container orchestration: database and job queue only."""
        health_checker = app_state.health_checker
        results = {}
        if health_checker is not None:
            for check_name in ("database", "job_queue"):
                if check_name in health_checker.checks:
                    results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": utcnow().isoformat()
            }
        )


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
