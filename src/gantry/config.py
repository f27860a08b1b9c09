"""Configuration loading for Gantry.

Reads ``.gantry/config.yaml``; a missing file yields defaults. Deployment
environments override individual fields through ``GANTRY_*`` variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from gantry.pipeline.models import parse_duration_seconds
from gantry.pipeline.secrets import DEFAULT_ENV_PREFIX

logger = logging.getLogger(__name__)

CONFIG_DIR = ".gantry"


class GantrySettings(BaseModel):
    """Settings for the CLI and the webhook server."""

    max_parallel: int = Field(4, ge=1)
    cancel_grace_seconds: float = Field(10.0, ge=0)
    data_dir: str = ".gantry-data"
    workflows_dir: str = ".gantry/workflows"

    # Secret store sources
    secrets_file: str | None = None
    secret_env_prefix: str = DEFAULT_ENV_PREFIX

    # HMAC key for GitHub webhook deliveries; unset disables verification
    webhook_secret: str | None = None

    default_timeout: str | None = "1h"

    # Modules exposing register_invokers(registry)
    plugins: list[str] = []

    @field_validator("default_timeout")
    @classmethod
    def _validate_timeout(cls, v: str | None) -> str | None:
        if v:
            parse_duration_seconds(v)
        return v

    def default_timeout_seconds(self) -> int | None:
        return parse_duration_seconds(self.default_timeout) if self.default_timeout else None

    def resolve_path(self, repo_root: Path, value: str) -> Path:
        p = Path(value)
        return p if p.is_absolute() else repo_root / p

    def db_path(self, repo_root: Path) -> Path:
        return self.resolve_path(repo_root, self.data_dir) / "gantry.db"


def load_settings(repo_root: Path) -> GantrySettings:
    """Load settings from ``<repo_root>/.gantry/config.yaml`` plus env overrides.

    Raises:
        ValueError: If the config file or an override is invalid.
    """
    config_path = repo_root / CONFIG_DIR / "config.yaml"
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path}: expected a YAML mapping")
    else:
        logger.debug("No config at %s, using defaults", config_path)

    # Environment variable overrides for deployment
    overrides = {
        "GANTRY_MAX_PARALLEL": "max_parallel",
        "GANTRY_DATA_DIR": "data_dir",
        "GANTRY_CANCEL_GRACE": "cancel_grace_seconds",
        "GANTRY_WEBHOOK_SECRET": "webhook_secret",
        "GANTRY_SECRETS_FILE": "secrets_file",
    }
    for env_var, field_name in overrides.items():
        value = os.environ.get(env_var)
        if value:
            raw[field_name] = value

    settings = GantrySettings(**raw)
    logger.info(
        "Loaded Gantry settings: max_parallel=%d data_dir=%s",
        settings.max_parallel,
        settings.data_dir,
    )
    return settings
