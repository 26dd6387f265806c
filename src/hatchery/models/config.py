"""Configuration models."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HypervisorConfig(BaseModel):
    """Connection to the hypervisor control-plane API."""
    host: str = Field(..., description="API host name or address")
    port: int = Field(default=8006)
    node: str = Field(..., description="Cluster node the containers live on")
    user: str = Field(default="root@pam")
    token_id: str = Field(..., description="API token id")
    token_secret: Optional[str] = Field(None, description="API token secret, usually injected via environment")
    verify_ssl: bool = Field(default=True)
    timeout: float = Field(default=30.0, gt=0)
    max_sessions: int = Field(default=4, ge=1, description="Concurrent connections to the API")

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"


class PollSettings(BaseModel):
    """Bounded retry settings for one readiness wait."""
    max_attempts: int = Field(default=30, ge=1)
    delay: float = Field(default=2.0, ge=0)
    backoff: float = Field(default=1.0, ge=1.0)
    max_delay: Optional[float] = Field(None, gt=0)


class PollingConfig(BaseModel):
    """Readiness waits used during reconciliation."""
    registration: PollSettings = Field(default_factory=PollSettings)
    status: PollSettings = Field(default_factory=lambda: PollSettings(max_attempts=30, delay=2.0))
    address: PollSettings = Field(default_factory=lambda: PollSettings(max_attempts=10, delay=3.0))


class OrchestratorConfig(BaseModel):
    """Batch scheduling configuration."""
    concurrency: int = Field(default=4, ge=1)
    host_timeout: float = Field(default=900.0, gt=0, description="Seconds allowed per container")
    transport_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=5.0, ge=0)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class SSHConfig(BaseModel):
    """SSH channel to provisioned containers."""
    port: int = Field(default=22)
    connect_timeout: float = Field(default=10.0, gt=0)
    command_timeout: float = Field(default=600.0, gt=0)
    auto_add_host_keys: bool = Field(default=True)
    known_hosts_file: Optional[str] = None


class HatcheryConfig(BaseModel):
    """Main configuration model."""
    hypervisor: HypervisorConfig
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)

    model_config = ConfigDict(extra="ignore")
