"""Library configuration via environment variables (ASYNCSSE_ prefix) or defaults."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class SSEConfig(BaseSettings):
    read_size: int = Field(default=8192, gt=0)  # bytes requested per source read
    log_level: str = "INFO"
    log_dir: str | None = None
    log_json: bool = True

    model_config = {"env_prefix": "ASYNCSSE_"}
