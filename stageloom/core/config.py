"""Migration configuration.

Loaded from an optional YAML file, then overridden by ``STAGELOOM_*``
environment variables (a ``.env`` file is honoured), then by explicit
overrides. Everything is validated by pydantic before any file is touched.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "STAGELOOM_"
DEFAULT_CONFIG_FILE = "stageloom.yaml"

# Globs for business-critical code (used by the quality evaluator)
DEFAULT_CRITICAL_PATTERNS = [
    "**/services/**",
    "**/handlers/**",
    "**/usecase/**",
    "**/domain/**",
    "**/core/**",
]


class MigrationConfig(BaseModel):
    """Validated settings for one migration session."""

    max_retries: int = Field(default=2, ge=0)
    max_stage_size: int = Field(default=5, ge=1)
    build_timeout: float = Field(default=120.0, gt=0)
    test_timeout: float = Field(default=300.0, gt=0)
    continue_on_non_critical_failure: bool = True

    # Empty command = check skipped
    build_command: Union[str, List[str]] = ""
    test_command: Union[str, List[str]] = ""

    write_workers: int = Field(default=4, ge=1)
    confidence_threshold: float = Field(default=70.0, ge=0, le=100)

    include_patterns: List[str] = Field(default_factory=lambda: ["**/*"])
    exclude_patterns: List[str] = Field(default_factory=list)
    critical_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_PATTERNS))

    state_dir: str = ".stageloom"


_LIST_FIELDS = {"include_patterns", "exclude_patterns", "critical_patterns"}


def _env_overrides() -> Dict[str, Any]:
    """Collect ``STAGELOOM_<FIELD>`` environment overrides."""
    overrides: Dict[str, Any] = {}
    for name in MigrationConfig.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name in _LIST_FIELDS:
            overrides[name] = [p.strip() for p in raw.split(",") if p.strip()]
        else:
            overrides[name] = raw
    return overrides


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> MigrationConfig:
    """Load and validate a MigrationConfig.

    Args:
        path: YAML file. When None, ``stageloom.yaml`` in the working
            directory is used if it exists.
        overrides: Explicit values that win over file and environment.

    Raises:
        ConfigurationError: Unreadable YAML, unknown shape, or invalid values.
    """
    load_dotenv()

    data: Dict[str, Any] = {}
    config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)

    if path and not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e

        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config {config_path} must be a mapping")

        # Accept either a flat mapping or one nested under "migration:"
        section = loaded.get("migration") or loaded
        if not isinstance(section, dict):
            raise ConfigurationError(f"'migration' section in {config_path} must be a mapping")
        data.update(section)
        logger.debug(f"Loaded config from {config_path}")

    data.update(_env_overrides())
    data.update(overrides or {})

    try:
        return MigrationConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid migration config: {e}", details=e.errors()) from e
