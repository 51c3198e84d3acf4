"""Application factory for creating FastAPI instances."""

from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.action_dispatcher import ActionDispatcher
from .core.action_registry import ActionHandlerRegistry
from .core.instance_manager import InMemoryWorkflowInstanceManager
from .core.middleware import ErrorHandlingMiddleware
from .core.workflow_service import WorkflowService
from .storage.definition_store import InMemoryWorkflowDefinitionStore
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.definition_store: Optional[InMemoryWorkflowDefinitionStore] = None
        self.instance_manager: Optional[InMemoryWorkflowInstanceManager] = None
        self.action_registry: Optional[ActionHandlerRegistry] = None
        self.dispatcher: Optional[ActionDispatcher] = None
        self.workflow_service: Optional[WorkflowService] = None


def register_default_handlers(action_registry: ActionHandlerRegistry, logger) -> None:
    """Register the built-in action handlers."""
    from .actions.builtin_handlers import DEFAULT_HANDLERS

    for action_name, handler, description in DEFAULT_HANDLERS:
        if action_registry.handler_exists(action_name):
            logger.info(f"Action handler already exists: {action_name}")
            continue
        action_registry.register_handler(action_name, handler, description)

    logger.info("Default action handlers registration completed")


def initialize_core_components(config: AppConfig, logger) -> ApplicationState:
    """Build the engine components described by the configuration."""
    state = ApplicationState()
    state.config = config
    state.definition_store = InMemoryWorkflowDefinitionStore()
    state.instance_manager = InMemoryWorkflowInstanceManager()
    state.action_registry = ActionHandlerRegistry()
    state.dispatcher = ActionDispatcher(
        registry=state.action_registry,
        instance_manager=state.instance_manager,
        handler_timeout=config.action_handler_timeout,
        max_workers=config.action_executor_workers
    )
    state.workflow_service = WorkflowService(
        definition_store=state.definition_store,
        instance_manager=state.instance_manager,
        dispatcher=state.dispatcher,
        auto_execute_actions=config.auto_execute_actions,
        default_workflow_name=config.default_workflow_name
    )
    logger.info("Core components initialized")
    return state


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler for a configuration."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        state = initialize_core_components(config, logger)
        register_default_handlers(state.action_registry, logger)
        init_dependencies(
            workflow_service=state.workflow_service,
            action_registry=state.action_registry
        )

        app.state.components = state
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            logger.info(f"Shutting down {config.app_name}")
            state.dispatcher.shutdown(wait=False)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Compiles activity diagrams into workflows and drives their instances",
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
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }
