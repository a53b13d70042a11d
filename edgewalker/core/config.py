"""Engine configuration.

Loaded from ``.edgewalker/config.yaml`` when present:

    base_url: https://engine.example.com
    db_path: .edgewalker/state.db
    dispatch_timeout: 30
    known_worker_types: [http_fetch, summarize]

``EDGEWALKER_BASE_URL`` and ``EDGEWALKER_DB_PATH`` override the file.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from edgewalker.core.dispatch import DEFAULT_DISPATCH_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".edgewalker/config.yaml")


class ConfigError(Exception):
    """Configuration file is malformed."""

    pass


class EngineConfig(BaseModel):
    base_url: str = "http://localhost:8000"
    db_path: Path = Path(".edgewalker/state.db")
    dispatch_timeout: float = Field(default=DEFAULT_DISPATCH_TIMEOUT, gt=0)
    # None means worker types are not checked at compile time
    known_worker_types: list[str] | None = None

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must start with http:// or https:// (got {v!r})")
        return v.rstrip("/")


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load config from YAML, then apply environment overrides."""
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Invalid config in {config_path}: expected a mapping")
        data = loaded or {}
    elif path is not None:
        raise ConfigError(f"Config file not found: {config_path}")

    if base_url := os.environ.get("EDGEWALKER_BASE_URL"):
        data["base_url"] = base_url
    if db_path := os.environ.get("EDGEWALKER_DB_PATH"):
        data["db_path"] = db_path

    try:
        config = EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e
    logger.debug(f"Loaded engine config: {config}")
    return config
