"""Pydantic models for service configuration."""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Interface to bind")
    port: int = Field(default=3001, gt=0, lt=65536, description="Listening port")
    base_url: str = Field(
        default="http://localhost:3001",
        description="Externally advertised base URL used to build artifact links",
    )


class StorageConfig(BaseModel):
    """Record store and staging directory locations."""

    database_url: str = Field(
        default="sqlite:///./data.db", description="Record store location (SQLAlchemy URL)"
    )
    process_dir: str = Field(
        default="processes", description="Root directory holding one sub-directory per job"
    )


class QueueConfig(BaseModel):
    """Admission queue settings."""

    concurrency: int = Field(
        default=1, ge=1, description="Maximum number of jobs running their pipeline at once"
    )


class FetchConfig(BaseModel):
    """Download stage settings."""

    concurrency: int = Field(default=5, ge=1, description="Downloads in flight per job")
    timeout_s: float = Field(default=60.0, gt=0.0, description="Per-request timeout in seconds")
    proxy_url: Optional[str] = Field(
        default=None, description="Outbound proxy for image downloads and page scraping"
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
        ),
        description="Client identity header sent with every request",
    )
    headers: Dict[str, str] = Field(
        default_factory=dict, description="Extra headers sent with every request"
    )


class UpscaleConfig(BaseModel):
    """External upscaler settings."""

    executable: str = Field(
        default="realcugan-ncnn-vulkan", description="Path to the upscaler executable"
    )
    models_path: str = Field(default="models-pro", description="Path to the models directory")
    concurrency: int = Field(default=2, ge=1, description="Concurrent subprocesses per job")
    scale: int = Field(default=2, ge=1, description="Upscale factor (-s)")
    denoise: int = Field(default=3, ge=-1, le=3, description="Denoise level (-n)")
    timeout_s: float = Field(
        default=900.0, gt=0.0, description="Hard timeout for one upscaler invocation"
    )
    kill_grace_period_s: float = Field(
        default=5.0, gt=0.0, description="Grace period between terminate and kill"
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    json_format: bool = Field(default=False, description="Render JSON lines instead of console")


class UpscalerConfig(BaseModel):
    """Complete application configuration with validation."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    upscale: UpscaleConfig = Field(default_factory=UpscaleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "UpscalerConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "UpscalerConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("host") is not None:
            config_dict["server"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["server"]["port"] = cli_args["port"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return UpscalerConfig.from_dict(config_dict)
