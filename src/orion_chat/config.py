"""Runtime configuration read from the environment."""

import logging
import os
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .domain.catalog import DEFAULT_MODEL_ID

# provider -> environment variables tried in order
CREDENTIAL_ENV_VARS: Dict[str, tuple] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "deepseek": ("DEEPSEEK_API_KEY",),
}


class EnvCredentials:
    """Credential source reading provider API keys from the environment on every call."""

    def __init__(self, env_vars: Optional[Dict[str, tuple]] = None):
        self.env_vars = env_vars or CREDENTIAL_ENV_VARS

    def __call__(self, provider: str) -> Optional[str]:
        for name in self.env_vars.get(provider, ()):
            value = os.getenv(name)
            if value:
                return value
        return None


class AppConfig(BaseModel):
    """Application settings."""

    model_config = ConfigDict(protected_namespaces=())

    default_model_id: str = DEFAULT_MODEL_ID
    persist_interval: float = 0.3
    cache_path: str = ":memory:"
    remote_url: Optional[str] = None
    remote_key: Optional[str] = None
    user_id: str = "local-user"
    log_level: str = "INFO"
    max_sessions: int = Field(default=64, ge=1)  # open chat sessions kept by the API

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            default_model_id=os.getenv("ORION_DEFAULT_MODEL", DEFAULT_MODEL_ID),
            persist_interval=float(os.getenv("ORION_PERSIST_INTERVAL", "0.3")),
            cache_path=os.getenv("ORION_CACHE_PATH", ":memory:"),
            remote_url=os.getenv("ORION_REMOTE_URL") or None,
            remote_key=os.getenv("ORION_REMOTE_KEY") or None,
            user_id=os.getenv("ORION_USER_ID", "local-user"),
            log_level=os.getenv("ORION_LOG_LEVEL", "INFO"),
            max_sessions=int(os.getenv("ORION_MAX_SESSIONS", "64")),
        )


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through a level filter."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
