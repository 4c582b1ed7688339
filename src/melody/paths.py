"""
Path Resolver — logical paths to physical locations.

Three translations live here:

1. Backup tree: a logical path plus scope and machine id maps to a
   file under the storage root::

       <root>/shared/<logical>            (scope = shared)
       <root>/<machine_id>/<logical>      (scope = machine)

   ``identify`` inverts the mapping.

2. Native <-> virtualized subsystem: ``C:\\Users\\me`` is
   ``/mnt/c/Users/me`` inside a WSL-style mount, and back again. Drive
   letters are upper case natively and lower case in the mount.

3. Source locators: ``{{variable}}``, ``%NAME%``, ``$env:NAME``,
   ``$NAME`` and ``~`` are expanded, registry hive names are
   normalized, and file paths are translated for the active
   environment.

Every failure raises PathResolutionError.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Mapping, Optional

from .errors import PathResolutionError
from .models import Scope

logger = logging.getLogger("melody.paths")

SHARED_DIR = "shared"

HIVE_ALIASES = {
    "HKLM": "HKLM",
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKCU": "HKCU",
    "HKEY_CURRENT_USER": "HKCU",
    "HKCR": "HKCR",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKU": "HKU",
    "HKEY_USERS": "HKU",
    "HKCC": "HKCC",
    "HKEY_CURRENT_CONFIG": "HKCC",
}

_MACHINE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
_DRIVE_RE = re.compile(r"^([A-Za-z]):(?:[\\/]|$)")
_TEMPLATE_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_ENV_PATTERN = (
    r"%(?P<pct>[A-Za-z_][A-Za-z0-9_()]*)%"
    r"|\$env:(?P<ps>[A-Za-z_][A-Za-z0-9_()]*)"
    r"|\$\{env:(?P<psb>[A-Za-z_][A-Za-z0-9_()]*)\}"
    r"|\$(?P<sh>[A-Za-z_][A-Za-z0-9_]*)"
)
_ENV_RE = re.compile(_ENV_PATTERN)
_TOKEN_RE = re.compile(r"\{\{\s*(?P<var>[A-Za-z_][A-Za-z0-9_]*)\s*\}\}|" + _ENV_PATTERN)
_REGISTRY_RE = re.compile(r"^([A-Za-z_]+):?[\\/](.*)$")


class Environment(str, Enum):
    """Where the engine is running relative to the captured system."""

    NATIVE = "native"
    VIRTUALIZED = "virtualized"


@dataclass(frozen=True)
class LogicalLocation:
    """The identity ``resolve`` was called with."""

    logical: str
    scope: Scope
    machine_id: Optional[str] = None


def slugify(name: str) -> str:
    """Filesystem-safe lower-case form of a template name."""
    slug = re.sub(r"[^a-z0-9_\-]+", "-", name.lower()).strip("-")
    return slug or "template"


def template_variables(locator: str) -> list[str]:
    """Names referenced as ``{{name}}`` in a locator."""
    return _TEMPLATE_VAR_RE.findall(locator)


def split_registry_key(locator: str) -> tuple[str, str]:
    """Split a registry locator into ``(hive, subkey)``.

    Accepts ``HKCU:\\Software\\X``, ``HKEY_CURRENT_USER\\Software\\X``
    and forward-slash variants.

    Raises:
        PathResolutionError: If the hive is unknown.
    """
    m = _REGISTRY_RE.match(locator.strip())
    if not m:
        raise PathResolutionError(f"Not a registry key: '{locator}'")
    hive = HIVE_ALIASES.get(m.group(1).upper())
    if hive is None:
        raise PathResolutionError(f"Unknown registry hive '{m.group(1)}' in '{locator}'")
    parts = [p for p in re.split(r"[\\/]+", m.group(2)) if p]
    return hive, "\\".join(parts)


def normalize_registry_key(locator: str) -> str:
    """Canonical ``HIVE:\\sub\\key`` form of a registry locator."""
    hive, subkey = split_registry_key(locator)
    return f"{hive}:\\{subkey}" if subkey else f"{hive}:\\"


class PathResolver:
    """Maps logical paths and source locators to physical locations.

    Args:
        storage_root: Root of the backup tree (shared/ and <machine>/).
        environment: Native Windows or a virtualized POSIX subsystem.
        mount_root: Where drives are mounted inside the subsystem.
        env: Environment variables used for locator expansion.
            Defaults to ``os.environ``.
    """

    def __init__(
        self,
        storage_root: Path,
        environment: Environment | str = Environment.NATIVE,
        mount_root: str = "/mnt",
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.storage_root = Path(storage_root).expanduser()
        self.environment = Environment(environment)
        mount = "/" + mount_root.strip("/")
        self.mount_root = PurePosixPath(mount)
        self._env = env if env is not None else os.environ

    # ------------------------------------------------------------------
    # Backup tree
    # ------------------------------------------------------------------

    def resolve(self, logical: str, scope: Scope | str, machine_id: Optional[str] = None) -> Path:
        """Map a logical path into the backup tree.

        Pure and deterministic: the same inputs always give the same
        path, and ``identify`` recovers them.

        Raises:
            PathResolutionError: Invalid logical path, or a machine
                scope without a valid machine id.
        """
        parts = self._logical_parts(logical)
        scope = Scope(scope)
        if scope is Scope.SHARED:
            base = self.storage_root / SHARED_DIR
        else:
            base = self.storage_root / self.check_machine_id(machine_id)
        return base.joinpath(*parts)

    def identify(self, physical: Path | str) -> LogicalLocation:
        """Reverse ``resolve``: which logical identity produced this path?

        Raises:
            PathResolutionError: The path is outside the backup tree.
        """
        path = Path(physical).expanduser()
        try:
            rel = path.relative_to(self.storage_root)
        except ValueError as exc:
            raise PathResolutionError(
                f"'{path}' is not under storage root '{self.storage_root}'", cause=exc
            ) from exc
        if len(rel.parts) < 2:
            raise PathResolutionError(f"'{path}' does not name a logical path")
        head, rest = rel.parts[0], rel.parts[1:]
        logical = "/".join(rest)
        if head == SHARED_DIR:
            return LogicalLocation(logical=logical, scope=Scope.SHARED)
        return LogicalLocation(
            logical=logical,
            scope=Scope.MACHINE,
            machine_id=self.check_machine_id(head),
        )

    @staticmethod
    def check_machine_id(machine_id: Optional[str]) -> str:
        """Validate a machine id as a single safe path segment."""
        if not machine_id or not _MACHINE_ID_RE.match(machine_id):
            raise PathResolutionError(f"Invalid machine id: '{machine_id}'")
        if machine_id.lower() == SHARED_DIR:
            raise PathResolutionError("Machine id 'shared' is reserved")
        return machine_id

    @staticmethod
    def _logical_parts(logical: str) -> list[str]:
        if not logical or not logical.strip():
            raise PathResolutionError("Logical path is empty")
        if logical.startswith(("/", "\\")) or _DRIVE_RE.match(logical):
            raise PathResolutionError(f"Logical path must be relative: '{logical}'")
        parts = [p for p in re.split(r"[\\/]+", logical) if p and p != "."]
        if not parts or ".." in parts:
            raise PathResolutionError(f"Logical path escapes its tree: '{logical}'")
        return parts

    # ------------------------------------------------------------------
    # Native <-> virtualized
    # ------------------------------------------------------------------

    def to_virtual(self, native: str) -> str:
        """``C:\\Users\\me`` -> ``/mnt/c/Users/me``."""
        m = _DRIVE_RE.match(native)
        if not m:
            raise PathResolutionError(f"Not a drive-letter path: '{native}'")
        win = PureWindowsPath(native)
        rest = [p for p in win.parts[1:]]
        return str(self.mount_root.joinpath(m.group(1).lower(), *rest))

    def to_native(self, virtual: str) -> str:
        """``/mnt/c/Users/me`` -> ``C:\\Users\\me``."""
        path = PurePosixPath(virtual)
        try:
            rel = path.relative_to(self.mount_root)
        except ValueError as exc:
            raise PathResolutionError(
                f"'{virtual}' is not under mount root '{self.mount_root}'", cause=exc
            ) from exc
        if not rel.parts or not re.fullmatch(r"[A-Za-z]", rel.parts[0]):
            raise PathResolutionError(f"'{virtual}' does not name a mounted drive")
        drive = rel.parts[0].upper() + ":\\"
        return str(PureWindowsPath(drive, *rel.parts[1:]))

    def for_environment(self, path: str) -> str:
        """Translate a file path for the environment the engine runs in."""
        if self.environment is Environment.VIRTUALIZED and _DRIVE_RE.match(path):
            return self.to_virtual(path)
        if self.environment is Environment.NATIVE and path.startswith(str(self.mount_root) + "/"):
            return self.to_native(path)
        return path

    # ------------------------------------------------------------------
    # Source locators
    # ------------------------------------------------------------------

    def expand(self, locator: str, variables: Optional[Mapping[str, object]] = None) -> str:
        """Substitute template variables and environment variables.

        Raises:
            PathResolutionError: A referenced name is not defined.
        """
        variables = variables or {}

        def _template(name: str) -> str:
            if name not in variables:
                raise PathResolutionError(f"Undefined template variable '{name}' in '{locator}'")
            # Variable values may name environment variables themselves.
            return self._expand_env(str(variables[name]), locator)

        def _token(m: re.Match) -> str:
            if m.group("var"):
                return _template(m.group("var"))
            return self._expand_env(m.group(0), locator)

        out = _TOKEN_RE.sub(_token, locator)
        if out == "~" or out.startswith(("~/", "~\\")):
            home = self._env.get("USERPROFILE") or self._env.get("HOME")
            if not home:
                raise PathResolutionError(f"Cannot expand '~' in '{locator}': no home directory")
            out = home + out[1:]
        return out

    def _expand_env(self, text: str, locator: str) -> str:
        def _env(m: re.Match) -> str:
            if m.group("sh"):
                # Unset bare $NAME is literal text, e.g. C:\$Recycle.Bin
                return self._env.get(m.group("sh"), m.group(0))
            name = m.group("pct") or m.group("ps") or m.group("psb")
            value = self._env.get(name)
            if value is None:
                raise PathResolutionError(f"Undefined environment variable '{name}' in '{locator}'")
            return value

        return _ENV_RE.sub(_env, text)

    def file_source(self, locator: str, variables: Optional[Mapping[str, object]] = None) -> str:
        """Physical path for a file-path rule."""
        return self.for_environment(self.expand(locator, variables))

    def registry_source(self, locator: str, variables: Optional[Mapping[str, object]] = None) -> str:
        """Physical key for a registry-key rule."""
        return normalize_registry_key(self.expand(locator, variables))

    def application_source(self, locator: str, variables: Optional[Mapping[str, object]] = None) -> str:
        """Physical locator for an application-setting rule."""
        return self.expand(locator, variables)
