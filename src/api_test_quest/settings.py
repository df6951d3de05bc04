"""Runner settings.

Timeouts and polling intervals are read from QUEST_* environment variables;
CLI options override them.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QUEST_", extra="ignore")

    # HTTP
    request_timeout: float = Field(default=10.0, gt=0)

    # System under test
    ready_timeout: float = Field(default=15.0, gt=0)
    poll_interval: float = Field(default=0.5, gt=0)
    probe_timeout: float = Field(default=2.0, gt=0)
    stop_grace_period: float = Field(default=5.0, ge=0)
    stream_app: bool = False

    # Whole run; None means no deadline
    run_deadline: float | None = Field(default=None, gt=0)
