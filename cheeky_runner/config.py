"""
Cheeky CI Runner Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunnerConfig(BaseSettings):
    """Configuration for the runner agent and its executors"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Executor selection
    runner_executor: Literal["docker", "local"] = Field(
        default="docker",
        description="Sandbox backend used to run jobs"
    )

    # Docker Engine connection
    docker_base_url: str = Field(
        default="",
        description="Docker daemon URL (empty: use DOCKER_HOST / local socket)"
    )
    docker_api_timeout: int = Field(default=120, description="Docker API call timeout in seconds")

    # Container layout
    workspace_mount_path: str = Field(
        default="/workspace",
        description="Path the job workspace is bind-mounted to inside the sandbox"
    )
    container_name_prefix: str = Field(default="job-")
    keepalive_command: list[str] = Field(
        default=["sleep", "infinity"],
        description="Command that keeps the job container alive between steps"
    )

    # Timeouts (seconds)
    stop_timeout: int = Field(default=10, description="Grace period before the container is killed")
    sandbox_create_timeout: float = Field(default=900.0, description="Max time to pull, create and start")
    teardown_timeout: float = Field(default=60.0, description="Max time for sandbox teardown")

    # Limits / capabilities
    max_output_size: int = Field(default=1024 * 1024, description="Max captured bytes per stream")
    max_memory_mb: int = Field(default=0, description="Advertised memory ceiling (0 = unknown)")

    # Job source
    job_files: list[str] = Field(default_factory=list, description="Job documents to run, in order")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="text")

    @field_validator("workspace_mount_path")
    @classmethod
    def validate_mount_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("workspace_mount_path must be absolute")
        return v.rstrip("/") or "/"

    @field_validator("container_name_prefix")
    @classmethod
    def validate_name_prefix(cls, v):
        return v.strip()


# Singleton instance
_runner_config: RunnerConfig | None = None


def get_runner_config() -> RunnerConfig:
    """Get or create runner configuration singleton"""
    global _runner_config
    if _runner_config is None:
        _runner_config = RunnerConfig()
    return _runner_config
