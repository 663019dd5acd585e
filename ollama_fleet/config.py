"""
Settings for the ollama-fleet service.

Settings are loaded once at process start from an optional YAML file and
environment overrides, then handed to ``create_app``. Handlers never read the
process environment themselves.

Lookup order for the YAML file:
    1. explicit ``path`` argument
    2. ``FLEET_CONFIG`` environment variable
    3. ``config/fleet.yaml`` at the repository root (optional)

Environment overrides: ``GCLOUD_PROJECT``, ``DEFAULT_ZONE``, ``DEFAULT_MODEL``.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ollama_fleet.errors import ConfigError

PACKAGE_DIR = Path(__file__).resolve().parent
ROOT_DIR = PACKAGE_DIR.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "fleet.yaml"

ENV_OVERRIDES = {
    "GCLOUD_PROJECT": "project",
    "DEFAULT_ZONE": "default_zone",
    "DEFAULT_MODEL": "default_model",
}


class Settings(BaseModel):
    project: Optional[str] = None
    default_zone: str = "us-central1-a"
    default_model: str = "llama2"

    # Instance shape
    machine_type: str = "n1-standard-2"
    source_image: str = "projects/debian-cloud/global/images/family/debian-11"
    disk_size_gb: int = Field(default=50, gt=0)
    network: str = "global/networks/default"
    service_account_scopes: List[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/cloud-platform"]
    )

    # Ollama on the instance
    ollama_port: int = Field(default=11434, gt=0, lt=65536)
    ollama_timeout_s: float = Field(default=600.0, ge=600.0)

    # Compute Engine long-running operations
    operation_timeout_s: float = Field(default=300.0, gt=0)

    bind_host: str = "0.0.0.0"
    bind_port: int = 8080

    def require_project(self) -> str:
        """Return the project id or fail before any provider call is made."""
        if not self.project:
            raise ConfigError("Server configuration error: GCLOUD_PROJECT not set.")
        return self.project


def find_config_path(environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    environ = os.environ if environ is None else environ
    env_path = environ.get("FLEET_CONFIG")
    if env_path:
        return Path(env_path)
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")
    return data


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    environ = os.environ if environ is None else environ
    config_path = path or find_config_path(environ)
    raw: Dict[str, Any] = _read_yaml(Path(config_path)) if config_path else {}

    for env_key, field in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value:
            raw[field] = value

    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
