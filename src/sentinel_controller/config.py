from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import RedisAddress
from .policy import RetryPolicy


class ControllerSettings(BaseSettings):
    """Environment-based settings (prefix ``SENTINEL_CONTROLLER_``).

    ``SENTINELS`` is a comma-separated list of ``host:port``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SENTINEL_CONTROLLER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    sentinels: str = ""
    master_name: str = "mymaster"
    sentinel_username: Optional[str] = None
    sentinel_password: Optional[str] = None
    socket_timeout: float = Field(default=1.0, gt=0)

    target_id: str = ""

    poll_interval: float = Field(default=1.0, gt=0)
    resync_interval: float = Field(default=30.0, gt=0)
    debounce_window: float = Field(default=1.0, ge=0)
    unreachable_after: int = Field(default=3, ge=1)
    reconnect_initial_backoff_ms: int = Field(default=250, ge=0)
    reconnect_max_backoff_ms: int = Field(default=10_000, ge=0)

    apply_max_attempts: int = Field(default=5, ge=1)
    apply_initial_backoff_ms: int = Field(default=50, ge=0)
    apply_max_backoff_ms: int = Field(default=1_000, ge=0)

    shutdown_grace: float = Field(default=5.0, ge=0)

    kube_api_url: Optional[str] = None  # None: in-cluster service account
    kube_token: Optional[str] = None
    kube_verify: bool = True
    kube_port_name: str = "redis"

    log_level: str = "INFO"
    metrics_port: int = 0  # 0 disables the metrics endpoint

    @field_validator("log_level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @property
    def sentinel_addresses(self) -> list[RedisAddress]:
        """Parsed sentinel list; raises ConfigurationError when empty or malformed."""
        items = [s for s in (part.strip() for part in self.sentinels.split(",")) if s]
        if not items:
            raise ConfigurationError("At least one sentinel must be configured")
        return [RedisAddress.parse(s) for s in items]

    def reconnect_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_backoff_ms=self.reconnect_initial_backoff_ms,
            max_backoff_ms=max(self.reconnect_initial_backoff_ms, self.reconnect_max_backoff_ms),
        )

    def apply_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.apply_max_attempts,
            initial_backoff_ms=self.apply_initial_backoff_ms,
            max_backoff_ms=max(self.apply_initial_backoff_ms, self.apply_max_backoff_ms),
        )

    def validate_for_run(self) -> None:
        """Startup checks; failures here are fatal."""
        _ = self.sentinel_addresses  # raises on an empty or malformed list
        if not self.target_id:
            raise ConfigurationError("SENTINEL_CONTROLLER_TARGET_ID is required")
        if not self.master_name:
            raise ConfigurationError("SENTINEL_CONTROLLER_MASTER_NAME must not be empty")


@lru_cache()
def get_settings() -> ControllerSettings:
    try:
        return ControllerSettings()
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
