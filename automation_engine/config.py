"""Configuration management for the automation engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "AUTOMATION_ENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class KeyValueBackend(str, Enum):
    """Backends for shared run bookkeeping."""
    MEMORY = "memory"
    REDIS = "redis"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Automation Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./automation_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Dispatch settings
    worker_count: int = Field(default=4, description="Number of run worker threads")
    job_queue_size: int = Field(default=100, description="Capacity of the pending run queue")
    node_worker_count: int = Field(default=16, description="Thread pool size for node handlers")
    default_node_timeout: Optional[float] = Field(
        default=None,
        description="Node timeout in seconds when a node does not set its own"
    )

    # Reconciliation settings
    run_max_age_seconds: Optional[int] = Field(
        default=None,
        description="Force-fail RUNNING runs older than this; sweep disabled while unset"
    )
    reconcile_interval_seconds: int = Field(
        default=60,
        description="Seconds between reconciliation sweeps"
    )

    # Shared state settings
    kv_backend: KeyValueBackend = Field(
        default=KeyValueBackend.MEMORY,
        description="Backend for join counters and cancellation flags"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Trigger settings
    max_upload_size: int = Field(
        default=10 * 1024 * 1024,
        description="Default maximum upload size in bytes for file triggers"
    )
    schedule_default_timezone: str = Field(
        default="America/New_York",
        description="Timezone for schedule triggers that do not set one"
    )
    enable_scheduler: bool = Field(default=True, description="Start the schedule trigger adapter")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # Request middleware settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_request_middleware: bool = Field(
        default=True,
        description="Enable error handling and request logging middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('worker_count', 'job_queue_size', 'node_worker_count', 'reconcile_interval_seconds')
    @classmethod
    def validate_positive(cls, v):
        """Validate pool and queue sizes."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('default_node_timeout')
    @classmethod
    def validate_node_timeout(cls, v):
        """Validate the default node timeout."""
        if v is not None and v <= 0:
            raise ValueError("Node timeout must be positive")
        return v

    @field_validator('run_max_age_seconds')
    @classmethod
    def validate_run_max_age(cls, v):
        """Validate the reconciliation age."""
        if v is not None and v < 1:
            raise ValueError("Run max age must be at least 1 second")
        return v

    @field_validator('max_upload_size')
    @classmethod
    def validate_upload_size(cls, v):
        """Validate the upload ceiling."""
        if v < 1:
            raise ValueError("Maximum upload size must be positive")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def reconciliation_enabled(self) -> bool:
        """Whether the stale run sweep should run."""
        return self.run_max_age_seconds is not None

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None or value == "":
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Automation Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./automation_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            worker_count=get_env("WORKER_COUNT", 4, int),
            job_queue_size=get_env("JOB_QUEUE_SIZE", 100, int),
            node_worker_count=get_env("NODE_WORKER_COUNT", 16, int),
            default_node_timeout=get_env("DEFAULT_NODE_TIMEOUT", None, float),
            run_max_age_seconds=get_env("RUN_MAX_AGE_SECONDS", None, int),
            reconcile_interval_seconds=get_env("RECONCILE_INTERVAL_SECONDS", 60, int),
            kv_backend=KeyValueBackend(get_env("KV_BACKEND", "memory").lower()),
            redis_url=get_env("REDIS_URL", "redis://localhost:6379/0"),
            max_upload_size=get_env("MAX_UPLOAD_SIZE", 10 * 1024 * 1024, int),
            schedule_default_timezone=get_env("SCHEDULE_DEFAULT_TIMEZONE", "America/New_York"),
            enable_scheduler=get_env("ENABLE_SCHEDULER", True, bool),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_request_middleware=get_env("ENABLE_REQUEST_MIDDLEWARE", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list),
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
    """Load configuration from a .env file (if any) and the environment."""
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

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.kv_backend == KeyValueBackend.REDIS and not config.redis_url.startswith(("redis://", "rediss://", "unix://")):
        errors.append(f"Unsupported redis URL: {config.redis_url}")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_testing_config(**overrides) -> AppConfig:
    """Get testing configuration."""
    settings = dict(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        worker_count=2,
        job_queue_size=10,
        node_worker_count=4,
        enable_scheduler=False,
        enable_request_middleware=True,
    )
    settings.update(overrides)
    return AppConfig(**settings)
