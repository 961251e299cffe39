"""Process configuration read from the environment."""

import os
from typing import Mapping

from pydantic import BaseModel, Field

_TRUE = {"1", "true", "yes", "on"}


class EngineSettings(BaseModel):
    """Runtime settings of the flow engine."""

    redis_url: str = "redis://localhost:6379"
    auto_resume_interval: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    status_channel: str = "flow-status"
    inline_execution: bool = False
    log_level: str = "INFO"
    log_dir: str | None = "logs"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        values: dict = {}
        if "REDIS_URL" in env:
            values["redis_url"] = env["REDIS_URL"]
        if "FLOW_AUTO_RESUME_INTERVAL" in env:
            values["auto_resume_interval"] = float(env["FLOW_AUTO_RESUME_INTERVAL"])
        if "FLOW_MAX_WORKERS" in env:
            values["max_workers"] = int(env["FLOW_MAX_WORKERS"])
        if "FLOW_STATUS_CHANNEL" in env:
            values["status_channel"] = env["FLOW_STATUS_CHANNEL"]
        if "FLOW_INLINE_EXECUTION" in env:
            values["inline_execution"] = env["FLOW_INLINE_EXECUTION"].strip().lower() in _TRUE
        if "LOG_LEVEL" in env:
            values["log_level"] = env["LOG_LEVEL"]
        if "LOG_DIR" in env:
            values["log_dir"] = env["LOG_DIR"] or None
        return cls(**values)
