"""Settings via pydantic-settings with CONTINUUM_ env prefix.

Retry policy values are configuration, not part of the orchestration
contract: the same attempt count, backoff and timeout apply to every
gateway operation.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONTINUUM_", env_file=".env")

    log_level: str = "info"

    # Context management
    max_context_tokens: int = 12000  # truncation budget for think/observe
    compaction_keep_recent: int = 3  # raw entries kept after compaction

    # Operation gateway (uniform across think/act/observe/compact/persist)
    operation_timeout: float = 60.0  # seconds, per attempt
    retry_max_attempts: int = 5
    retry_interval: float = 3.0  # seconds, fixed backoff

    # History advisory (continuation trigger)
    history_operation_limit: int = 200  # operations per epoch
    history_token_limit: int = 0  # 0 disables the transcript-size check

    # Snapshots
    snapshot_dir: str = ""  # empty keeps snapshots in memory

    # Event Bus
    event_bus_enabled: bool = True
    event_queue_size: int = 1000  # events beyond this are dropped and counted
    event_drain_timeout: float = 5.0  # seconds stop() waits for queued events
    event_sink_url: str = ""  # empty disables HTTP forwarding
    event_sink_timeout: float = 5.0

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.retry_interval < 0:
            raise ValueError("retry_interval must be >= 0")
        if self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be > 0")
        if self.max_context_tokens < 0:
            raise ValueError("max_context_tokens must be >= 0")
        if self.compaction_keep_recent < 0:
            raise ValueError("compaction_keep_recent must be >= 0")
        if self.event_queue_size < 1:
            raise ValueError("event_queue_size must be >= 1")
        return self
