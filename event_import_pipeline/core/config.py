"""
Configuration for Event Import Pipeline

Settings are declared as pydantic models, optionally loaded from a YAML file
and then overridden by environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigurationError

DEFAULT_ALLOWED_MIME_TYPES = [
    "text/csv",
    "text/plain",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/octet-stream",
]

DEFAULT_CACHE_MAX_SIZES = {
    "memory": 100 * 1024 * 1024,
    "filesystem": 500 * 1024 * 1024,
}


class CacheConfig(BaseModel):
    """Settings for generic cache instances."""

    backend: Literal["memory", "filesystem"] = "memory"
    default_ttl: int = Field(default=3600, ge=1)
    max_ttl: int = Field(default=86400, ge=1)
    max_entries: int = Field(default=1000, ge=1)
    max_size: Optional[int] = Field(default=None, ge=1)
    cache_dir: str = "/tmp/event-import-cache"
    cleanup_interval_ms: int = Field(default=300000, ge=0)
    key_prefix: str = ""

    @property
    def effective_max_size(self) -> int:
        """Configured capacity in bytes, or the default of the selected backend."""
        if self.max_size is not None:
            return self.max_size
        return DEFAULT_CACHE_MAX_SIZES[self.backend]


class UrlFetchCacheConfig(BaseModel):
    """Settings for the HTTP fetch cache of external import sources."""

    cache_dir: str = "/tmp/url-fetch-cache"
    max_size: int = Field(default=104857600, ge=1)
    default_ttl: int = Field(default=3600, ge=1)
    max_ttl: int = Field(default=2592000, ge=1)
    respect_cache_control: bool = True


class FetchConfig(BaseModel):
    """Outbound fetch limits for scheduled imports."""

    timeout_ms: int = Field(default=30000, ge=1)
    min_timeout_ms: int = Field(default=5000, ge=1)
    max_file_size: int = Field(default=100 * 1024 * 1024, ge=1)
    allowed_mime_types: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=6000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    user_agent: str = "EventImportPipeline/1.0"


class BatchConfig(BaseModel):
    """Page sizes used by the batch job handlers."""

    event_creation: int = Field(default=1000, ge=1)
    duplicate_analysis: int = Field(default=5000, ge=1)
    schema_detection: int = Field(default=10000, ge=1)


class PipelineConfig(BaseModel):
    """Top level configuration object."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    url_fetch_cache: UrlFetchCacheConfig = Field(default_factory=UrlFetchCacheConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    upload_dir: str = "uploads"
    log_level: str = "INFO"


# env var -> (section, field)
ENV_OVERRIDES: Dict[str, tuple] = {
    "CACHE_BACKEND": ("cache", "backend"),
    "CACHE_DEFAULT_TTL": ("cache", "default_ttl"),
    "CACHE_MAX_TTL": ("cache", "max_ttl"),
    "CACHE_MAX_ENTRIES": ("cache", "max_entries"),
    "CACHE_MAX_SIZE": ("cache", "max_size"),
    "CACHE_DIR": ("cache", "cache_dir"),
    "CACHE_CLEANUP_INTERVAL_MS": ("cache", "cleanup_interval_ms"),
    "URL_FETCH_CACHE_DIR": ("url_fetch_cache", "cache_dir"),
    "URL_FETCH_CACHE_MAX_SIZE": ("url_fetch_cache", "max_size"),
    "URL_FETCH_CACHE_TTL": ("url_fetch_cache", "default_ttl"),
    "URL_FETCH_CACHE_MAX_TTL": ("url_fetch_cache", "max_ttl"),
    "URL_FETCH_CACHE_RESPECT_CACHE_CONTROL": ("url_fetch_cache", "respect_cache_control"),
    "EVENT_CREATION_BATCH_SIZE": ("batch", "event_creation"),
    "DUPLICATE_ANALYSIS_BATCH_SIZE": ("batch", "duplicate_analysis"),
    "UPLOAD_DIR": (None, "upload_dir"),
    "LOG_LEVEL": (None, "log_level"),
}


def _env_value(key: str, raw: str) -> Any:
    if key == "URL_FETCH_CACHE_RESPECT_CACHE_CONTROL":
        # Only the literal "false" disables it
        return raw.strip().lower() != "false"
    return raw


def load_config(path: Optional[Union[str, Path]] = None,
                env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """
    Load configuration from an optional YAML file and the environment.

    Args:
        path: YAML file whose top-level keys mirror ``PipelineConfig``
        env: Environment mapping, defaults to ``os.environ``

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: If the file is unreadable or values are invalid
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), f"unable to read configuration file: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(str(path), "configuration root must be a mapping")
        data = loaded

    for key, (section, field_name) in ENV_OVERRIDES.items():
        if key not in env:
            continue
        value = _env_value(key, env[key])
        if section is None:
            data[field_name] = value
        else:
            section_data = data.setdefault(section, {})
            if not isinstance(section_data, dict):
                raise ConfigurationError(section, "section must be a mapping")
            section_data[field_name] = value

    try:
        return PipelineConfig.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ConfigurationError(location, first.get("msg", str(e))) from e
