"""Environment-driven settings for LogProbe."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class Settings:
    """Runtime settings resolved from the environment (and .env)."""
    cloud_id: Optional[str] = None
    url: Optional[str] = None
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    request_timeout: int = 30

    log_index_pattern: str = "logs-*"
    log_level: str = "WARNING"

    cache_ttl_seconds: int = 300
    cache_max_size: int = 800
    cache_shards: int = 16
    cache_min_batch: int = 10

    max_queries: int = 5

    error_count_threshold: int = 10
    spike_multiplier: float = 3.0
    spike_floor: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cloud_id=os.getenv("ELASTICSEARCH_CLOUD_ID"),
            url=os.getenv("ELASTICSEARCH_URL"),
            api_key=os.getenv("ELASTICSEARCH_API_KEY"),
            username=os.getenv("ELASTICSEARCH_USERNAME"),
            password=os.getenv("ELASTICSEARCH_PASSWORD"),
            request_timeout=_env_int("ELASTICSEARCH_REQUEST_TIMEOUT", 30),
            log_index_pattern=os.getenv("LOG_INDEX_PATTERN", "logs-*"),
            log_level=os.getenv("LOGPROBE_LOG_LEVEL", "WARNING"),
            cache_ttl_seconds=_env_int("LOGPROBE_CACHE_TTL_SECONDS", 300),
            cache_max_size=_env_int("LOGPROBE_CACHE_MAX_SIZE", 800),
            cache_shards=_env_int("LOGPROBE_CACHE_SHARDS", 16),
            cache_min_batch=_env_int("LOGPROBE_CACHE_MIN_BATCH", 10),
            max_queries=_env_int("LOGPROBE_MAX_QUERIES", 5),
            error_count_threshold=_env_int("LOGPROBE_ERROR_COUNT_THRESHOLD", 10),
            spike_multiplier=_env_float("LOGPROBE_SPIKE_MULTIPLIER", 3.0),
            spike_floor=_env_int("LOGPROBE_SPIKE_FLOOR", 10),
        )


def get_settings() -> Settings:
    """Get settings from environment or use defaults."""
    return Settings.from_env()
