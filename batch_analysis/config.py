"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL"
    )
    db_pool_min_size: int = Field(default=2, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Originating web API (downloads and status callbacks from job scripts)
    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL that running job scripts call back to",
    )
    auth_token_secret: Optional[str] = Field(
        default=None,
        description="Secret used to sign short-lived job script tokens",
    )
    auth_token_expiry_seconds: int = Field(
        default=86400 * 7,
        ge=60,
        description="Lifetime of tokens embedded in job scripts",
    )

    # PBS connection
    pbs_host: str = Field(default="localhost", description="PBS head node host")
    pbs_port: int = Field(default=22, description="PBS head node SSH port")
    pbs_username: str = Field(default="pbsuser", description="SSH user for PBS")
    pbs_key_file: Optional[Path] = Field(
        default=None, description="Private key used for the SSH connection"
    )
    pbs_default_queue: Optional[str] = Field(
        default=None, description="Queue to submit to (qsub -q)"
    )
    pbs_default_project: str = Field(
        default="_pbs_project_default", description="Project to submit to (qsub -P)"
    )
    pbs_primary_group: Optional[str] = Field(
        default=None, description="group_list attribute for submitted jobs"
    )

    # Paths
    local_data_root: Path = Field(
        default=Path("/data"),
        description="Data root as seen by this service",
    )
    cluster_data_root: Path = Field(
        default=Path("/data"),
        description="The same data root as seen by cluster nodes",
    )
    results_root: Path = Field(
        default=Path("/data/analysis_results"),
        description="Local directory that holds job item results",
    )

    # Remote call policy
    remote_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single remote queue command",
    )
    remote_enqueue_limit: Optional[int] = Field(
        default=None,
        description="Our own cap on jobs held in the remote queue (unset = remote limit only)",
    )

    # Worker
    worker_enabled: bool = Field(
        default=False, description="Run transition workers inside the API process"
    )
    worker_concurrency: int = Field(
        default=4, ge=1, le=64, description="Number of concurrent worker loops"
    )
    worker_poll_interval_s: float = Field(
        default=2.0, description="Sleep between claims when nothing is pending"
    )
    worker_claim_lease_s: int = Field(
        default=600,
        description="Seconds after which an unreleased claim may be taken over",
    )
    stale_after_minutes: int = Field(
        default=60,
        description="Queued/working items older than this are reconciled by polling",
    )
    reconcile_interval_s: int = Field(
        default=300, description="Seconds between stale item reconciliation sweeps"
    )
    reconcile_batch_size: int = Field(
        default=100, description="Maximum stale items polled per sweep"
    )
    capacity_refresh_interval_s: int = Field(
        default=60, description="Seconds between remote queue capacity checks"
    )

    @property
    def pbs_ssh_target(self) -> str:
        """user@host destination for ssh."""
        return f"{self.pbs_username}@{self.pbs_host}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
