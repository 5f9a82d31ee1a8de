"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import AppConfig, get_config
from .core.logging import setup_logging, get_logger
from .core.engine import WorkflowEngine
from .core.executors import ExecutorRegistry
from .core.health import HealthChecker
from .core.middleware import ErrorHandlingMiddleware
from .core.notifications import Notifier
from .core.resume_queue import ResumeQueue, ResumeWorker
from .core.task_service import HttpTaskService, NullTaskService, TaskService
from .storage.store import SQLDocumentStore
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[SQLDocumentStore] = None
        self.executors: Optional[ExecutorRegistry] = None
        self.notifier: Optional[Notifier] = None
        self.engine: Optional[WorkflowEngine] = None
        self.resume_queue: Optional[ResumeQueue] = None
        self.resume_worker: Optional[ResumeWorker] = None
        self.health_checker: Optional[HealthChecker] = None


# Global application state
app_state = ApplicationState()


def build_task_service(config: AppConfig) -> TaskService:
    """Pick the task service named by the configuration."""
    if config.task_service_url:
        return HttpTaskService(config.task_service_url, timeout=config.task_service_timeout)
    return NullTaskService()


def setup_health_checks(store: SQLDocumentStore, engine: WorkflowEngine,
                        worker: ResumeWorker, config: AppConfig, logger) -> HealthChecker:
    """Register the database, engine and resume worker checks."""
    health_checker = HealthChecker()

    def check_engine():
        return {
            "active_executions": len(engine.runs),
            "node_types": engine.executors.node_types(),
        }

    def check_resume_worker():
        if not config.enable_resume_worker:
            return "disabled"
        if not worker.is_running:
            raise RuntimeError("Resume worker is not polling")
        return {"poll_interval": worker.poll_interval, "max_attempts": worker.max_attempts}

    health_checker.register_check("database", store.ping, timeout=5.0)
    health_checker.register_check("workflow_engine", check_engine, timeout=2.0)
    health_checker.register_check("resume_worker", check_resume_worker, timeout=2.0)

    logger.info(f"Registered {len(health_checker.checks)} health checks")
    return health_checker


def create_lifespan_handler(config: AppConfig, executors: Optional[ExecutorRegistry] = None,
                            task_service: Optional[TaskService] = None):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
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
            store = SQLDocumentStore(config.database_url, echo=config.database_echo)
            notifier = Notifier()
            engine = WorkflowEngine(
                store,
                executors=executors or ExecutorRegistry(),
                notifier=notifier,
                task_service=task_service or build_task_service(config),
                config=config
            )
            resume_queue = ResumeQueue(store)
            resume_worker = ResumeWorker(
                engine,
                poll_interval=config.resume_poll_interval,
                max_attempts=config.resume_max_attempts,
                stale_timeout=config.resume_stale_timeout
            )

            app_state.config = config
            app_state.store = store
            app_state.executors = engine.executors
            app_state.notifier = notifier
            app_state.engine = engine
            app_state.resume_queue = resume_queue
            app_state.resume_worker = resume_worker

            init_dependencies(engine, resume_queue, notifier)
            app_state.health_checker = setup_health_checks(store, engine, resume_worker, config, logger)

            if config.enable_resume_worker:
                resume_worker.start()

            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        # Shutdown
        logger.info(f"Shutting down {config.app_name}")
        try:
            await resume_worker.stop()
        except Exception as e:
            logger.error(f"Error stopping resume worker: {str(e)}")

        try:
            await engine.shutdown()
        except Exception as e:
            logger.error(f"Error during workflow engine shutdown: {str(e)}")

        store.close()

    return lifespan


def create_app(config: Optional[AppConfig] = None, executors: Optional[ExecutorRegistry] = None,
               task_service: Optional[TaskService] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        config: Application settings; loaded from the environment when omitted
        executors: Registry with the host's node executors; builtins only when omitted
        task_service: Task service override; chosen from ``config`` when omitted
    """
    if config is None:
        config = get_config()

    app = FastAPI(
        title=config.app_name,
        description="A durable workflow engine that pauses for human review and resumes on decisions",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, executors, task_service)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Component health check; 503 when any component is unhealthy."""
        service = config.app_name.lower().replace(" ", "-")
        if app_state.health_checker is None:
            return JSONResponse(
                status_code=503,
                content={
                    "service": service,
                    "overall_status": "starting",
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        try:
            results = await app_state.health_checker.run_all_checks()
            status_code = 200 if results["overall_status"] == "healthy" else 503
            return JSONResponse(
                status_code=status_code,
                content={
                    "service": service,
                    "version": config.app_version,
                    **results
                }
            )
        except Exception as e:
            logger = get_logger(__name__)
            logger.error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
