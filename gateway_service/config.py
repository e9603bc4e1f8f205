import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# ---- Connection ----
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_POOL_SIZE = 4
DEFAULT_MIN_POOL_SIZE = 0
DEFAULT_MAX_IDLE_TIME_MS = 30000
DEFAULT_WAIT_QUEUE_TIMEOUT_MS = 5000

# ---- Retry / backoff ----
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# ---- Schema sampling ----
DEFAULT_SCHEMA_SAMPLE_SIZE = 1000


class RetryPolicy(BaseModel):
    """Bounded exponential backoff between connection attempts."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    initial_delay_ms: int = Field(default=DEFAULT_INITIAL_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1.0)

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delay_ms(self, attempt: int) -> float:
        """Wait after failed attempt *attempt* (0-based)."""
        return min(
            self.initial_delay_ms * self.backoff_multiplier ** attempt,
            self.max_delay_ms,
        )


class ServerConfig(BaseModel):
    mongodb_uri: str
    mongodb_timeout: int = DEFAULT_TIMEOUT_MS
    mongodb_max_pool_size: int = DEFAULT_MAX_POOL_SIZE
    mongodb_min_pool_size: int = DEFAULT_MIN_POOL_SIZE
    mongodb_max_idle_time_ms: int = DEFAULT_MAX_IDLE_TIME_MS
    mongodb_wait_queue_timeout_ms: int = DEFAULT_WAIT_QUEUE_TIMEOUT_MS
    schema_sample_size: int = DEFAULT_SCHEMA_SAMPLE_SIZE
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    read_only: bool = False
    disabled_tools: List[str] = Field(default_factory=list)


def _env_int(name: str, default: int, min_value: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer >= {min_value}")
    if parsed < min_value:
        raise ValueError(f"{name} must be an integer >= {min_value}")
    return parsed


def _env_float(name: str, default: float, min_value: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        parsed = float(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number >= {min_value}")
    if parsed < min_value:
        raise ValueError(f"{name} must be a number >= {min_value}")
    return parsed


def load_config() -> ServerConfig:
    """Build a ``ServerConfig`` from the environment (and ``.env``)."""
    global _current_config

    mongodb_uri = os.getenv("MONGODB_URI")
    if not mongodb_uri:
        raise ValueError("MONGODB_URI environment variable is required")

    max_pool = _env_int("MONGODB_MAX_POOL_SIZE", DEFAULT_MAX_POOL_SIZE, 1)
    min_pool = _env_int("MONGODB_MIN_POOL_SIZE", DEFAULT_MIN_POOL_SIZE, 0)
    if min_pool > max_pool:
        raise ValueError(
            "MONGODB_MIN_POOL_SIZE cannot be greater than MONGODB_MAX_POOL_SIZE"
        )

    disabled = [
        t.strip()
        for t in os.getenv("MONGODB_DISABLED_TOOLS", "").split(",")
        if t.strip()
    ]

    _current_config = ServerConfig(
        mongodb_uri=mongodb_uri,
        mongodb_timeout=_env_int("MONGODB_TIMEOUT", DEFAULT_TIMEOUT_MS, 1),
        mongodb_max_pool_size=max_pool,
        mongodb_min_pool_size=min_pool,
        mongodb_max_idle_time_ms=_env_int(
            "MONGODB_MAX_IDLE_TIME_MS", DEFAULT_MAX_IDLE_TIME_MS, 0,
        ),
        mongodb_wait_queue_timeout_ms=_env_int(
            "MONGODB_WAIT_QUEUE_TIMEOUT_MS", DEFAULT_WAIT_QUEUE_TIMEOUT_MS, 0,
        ),
        schema_sample_size=_env_int(
            "SCHEMA_SAMPLE_SIZE", DEFAULT_SCHEMA_SAMPLE_SIZE, 1,
        ),
        retry=RetryPolicy(
            max_retries=_env_int("MONGODB_MAX_RETRIES", DEFAULT_MAX_RETRIES, 0),
            initial_delay_ms=_env_int(
                "MONGODB_RETRY_INITIAL_DELAY_MS", DEFAULT_INITIAL_DELAY_MS, 0,
            ),
            max_delay_ms=_env_int(
                "MONGODB_RETRY_MAX_DELAY_MS", DEFAULT_MAX_DELAY_MS, 0,
            ),
            backoff_multiplier=_env_float(
                "MONGODB_RETRY_BACKOFF_MULTIPLIER", DEFAULT_BACKOFF_MULTIPLIER, 1.0,
            ),
        ),
        read_only=os.getenv("MONGODB_READONLY", "").strip().lower() == "true",
        disabled_tools=disabled,
    )
    return _current_config


_current_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    if _current_config is None:
        return load_config()
    return _current_config


def reset_config() -> None:
    """Forget the cached config (tests, reloads)."""
    global _current_config
    _current_config = None
