"""Configuration management for the umlflow workflow engine."""

import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .core.exceptions import ConfigurationError


ENV_PREFIX = "UMLFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="UML Flow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Workflow settings
    default_workflow_name: str = Field(
        default="ImportedWorkflow",
        description="Name given to imported diagrams that do not supply one"
    )
    auto_execute_actions: bool = Field(
        default=True,
        description="Run a node's embedded action when an instance enters it"
    )

    # Action dispatch settings
    action_handler_timeout: Optional[float] = Field(
        default=30.0,
        description="Seconds a single action handler may run; None disables the limit"
    )
    action_executor_workers: int = Field(
        default=4,
        description="Thread pool size for synchronous action handlers"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    # Security settings
    cors_origins: List[str] = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: List[str] = Field(
        default=["GET", "POST"],
        description="CORS allowed methods"
    )

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('action_handler_timeout')
    @classmethod
    def validate_handler_timeout(cls, v):
        """Validate handler timeout."""
        if v is not None and v <= 0:
            raise ValueError("Action handler timeout must be positive")
        return v

    @field_validator('action_executor_workers')
    @classmethod
    def validate_executor_workers(cls, v):
        """Validate executor pool size."""
        if v < 1:
            raise ValueError("Action executor needs at least one worker")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()] if value else default
            try:
                return type_func(value)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX}{key}: {value!r}",
                    config_key=f"{ENV_PREFIX}{key}"
                ) from e

        timeout = get_env("ACTION_HANDLER_TIMEOUT", 30.0, float)
        if timeout is not None and timeout <= 0:
            timeout = None

        return cls(
            app_name=get_env("APP_NAME", "UML Flow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            default_workflow_name=get_env("DEFAULT_WORKFLOW_NAME", "ImportedWorkflow"),
            auto_execute_actions=get_env("AUTO_EXECUTE_ACTIONS", True, bool),
            action_handler_timeout=timeout,
            action_executor_workers=get_env("ACTION_EXECUTOR_WORKERS", 4, int),
            log_level=get_env("LOG_LEVEL", LogLevel.INFO, lambda value: LogLevel(value.strip().upper())),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.action_executor_workers > 64:
        errors.append("Action executor pool larger than 64 workers")

    if errors:
        raise ConfigurationError(
            f"Configuration validation failed: {'; '.join(errors)}",
            details={"errors": errors}
        )


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        structured_logging=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        log_level=LogLevel.WARNING,
        action_handler_timeout=5.0,
        action_executor_workers=2
    )
