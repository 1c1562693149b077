"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class BrokerConfig(BaseModel):
    """Message broker connection settings."""

    backend: Literal["rabbitmq", "memory"] = Field(
        default="rabbitmq", description="Transport: RabbitMQ or the in-process broker"
    )
    host: str = Field(default="localhost", description="RabbitMQ host name")
    port: int = Field(default=5672, gt=0, le=65535, description="AMQP port")
    username: str = Field(default="guest", description="Broker user")
    password: str = Field(default="guest", description="Broker password")
    virtual_host: str = Field(default="/", description="AMQP virtual host")
    heartbeat_s: int = Field(default=60, ge=0, description="AMQP heartbeat interval (0 = off)")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="How often an idle consumer checks for shutdown"
    )
    reconnect_delay_s: float = Field(
        default=5.0, ge=0.0, description="Pause before a worker reconnects after broker loss"
    )


class StorageConfig(BaseModel):
    """File store settings."""

    root: str = Field(default="data", description="Directory holding uploads/ and results/")


class RetentionConfig(BaseModel):
    """Job store retention and staleness policy."""

    sweep_interval_s: float = Field(
        default=1800, gt=0.0, description="Seconds between retention sweeps (30 min)"
    )
    retention_window_s: float = Field(
        default=86400, gt=0.0, description="Age after which terminal jobs are evicted (24 h)"
    )
    stale_after_s: Optional[float] = Field(
        default=3600,
        gt=0.0,
        description="Processing jobs older than this are failed as stale (None = never)",
    )


class WorkersConfig(BaseModel):
    """In-process worker settings."""

    enabled: bool = Field(default=True, description="Run queue workers inside the API process")


class ApiConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, gt=0, le=65535, description="Bind port")
    max_upload_mb: int = Field(default=100, gt=0, description="Maximum upload size in MB")


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Root log level"
    )


class FileJobsConfig(BaseModel):
    """Complete application configuration with validation."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "FileJobsConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "FileJobsConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "broker" in cli_args:
            config_dict["broker"]["backend"] = cli_args["broker"]
        if "broker_host" in cli_args:
            config_dict["broker"]["host"] = cli_args["broker_host"]
        if "broker_port" in cli_args:
            config_dict["broker"]["port"] = cli_args["broker_port"]
        if "storage_root" in cli_args:
            config_dict["storage"]["root"] = cli_args["storage_root"]
        if "host" in cli_args:
            config_dict["api"]["host"] = cli_args["host"]
        if "port" in cli_args:
            config_dict["api"]["port"] = cli_args["port"]
        if cli_args.get("no_workers"):
            config_dict["workers"]["enabled"] = False
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return FileJobsConfig.from_dict(config_dict)
