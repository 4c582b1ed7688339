"""
Shared vs machine configuration.

Every machine reads the same ``shared/config.yaml`` baseline and may
override any key in its own ``<machine_id>/config.yaml``. The merged
result is the machine's effective profile.
"""

from __future__ import annotations

import logging
import platform
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import MelodyError
from .paths import SHARED_DIR, Environment

logger = logging.getLogger("melody.config")

CONFIG_FILENAME = "config.yaml"


def merge(shared: Mapping[str, Any], machine: Mapping[str, Any]) -> dict[str, Any]:
    """Combine a shared baseline with machine overrides.

    Machine keys win; keys only in ``shared`` fall through. Neither
    input is modified.

    >>> merge({"A": 1, "B": 2}, {"B": 5, "C": 9})
    {'A': 1, 'B': 5, 'C': 9}
    """
    profile = dict(shared)
    profile.update(machine)
    return profile


def default_machine_id() -> str:
    """Host name reduced to a safe path segment."""
    name = re.sub(r"[^A-Za-z0-9_.\-]", "-", platform.node() or "").strip("-.")
    return name or "localhost"


class MelodySettings(BaseModel):
    """Effective engine settings for one machine."""

    machine_id: str = Field(default_factory=default_machine_id)
    environment: Environment = Environment.NATIVE
    mount_root: str = "/mnt"
    max_workers: int = Field(default=4, ge=1, le=64)
    timeout_seconds: float = Field(default=30.0, gt=0)
    key_id: Optional[str] = Field(
        default=None,
        description="Explicit encryption key id; defaults to the key fingerprint",
    )
    registry_root: Optional[Path] = Field(
        default=None,
        description="Directory mirroring the registry as JSON (offline mode)",
    )
    applications_root: Optional[Path] = Field(
        default=None,
        description="Directory of per-application JSON settings files",
    )

    @field_validator("registry_root", "applications_root")
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else None


class ConfigError(MelodyError):
    """A config.yaml file is unreadable or invalid."""


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def load_profile(storage_root: Path, machine_id: str) -> dict[str, Any]:
    """Merged raw config mapping for ``machine_id``."""
    root = Path(storage_root).expanduser()
    shared = _read_yaml(root / SHARED_DIR / CONFIG_FILENAME)
    machine = _read_yaml(root / machine_id / CONFIG_FILENAME)
    return merge(shared, machine)


def load_settings(
    storage_root: Path,
    machine_id: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> MelodySettings:
    """Load the effective settings for a machine.

    Args:
        storage_root: Backup tree root.
        machine_id: Machine to load for. Defaults to the host name.
        overrides: Values that win over both config files (CLI flags).
            ``None`` values are ignored.

    Raises:
        ConfigError: A config file is malformed or fails validation.
    """
    mid = machine_id or default_machine_id()
    profile = load_profile(storage_root, mid)
    profile["machine_id"] = mid
    if overrides:
        profile = merge(profile, {k: v for k, v in overrides.items() if v is not None})
    try:
        settings = MelodySettings(**profile)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings for machine '{mid}': {exc}") from exc
    logger.debug("Settings for %s: %s", mid, settings.model_dump(mode="json"))
    return settings
