"""
Capabilities — how the engine touches the system it captures.

The engine never talks to the registry, the filesystem, or an
application directly. Each rule type is served by a Capability with two
calls, ``read(locator)`` and ``write(locator, value)``. Real OS bindings
and test doubles plug in the same way.

Local bindings shipped here:

LocalFileCapability:       files, directory trees, and globs on disk
JsonRegistryCapability:    a registry mirrored as JSON under a directory
                           (offline captures, test rigs, non-Windows hosts)
JsonApplicationCapability: one JSON settings file per application

Value shapes:

file-path, single file::

    {"kind": "file", "encoding": "utf-8" | "base64", "content": "..."}

file-path, directory or glob::

    {"kind": "tree", "files": {"<relative/posix/path>": {"encoding": ..., "content": ...}}}

registry-key::

    {"values": {"<name>": <json value>}, "subkeys": {"<name>": {...same shape...}}}
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .paths import split_registry_key

logger = logging.getLogger("melody.capabilities")

GLOB_CHARS = "*?["
REGISTRY_VALUES_FILE = "values.json"


def write_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class Capability(ABC):
    """Read/write access to one kind of system state."""

    @abstractmethod
    def read(self, locator: str) -> Any:
        """Return the value at ``locator``.

        Raises:
            Any exception; the engine records it against the rule.
        """

    @abstractmethod
    def write(self, locator: str, value: Any) -> None:
        """Write ``value`` to ``locator``."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable capability name."""


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def _encode_bytes(raw: bytes) -> dict[str, str]:
    try:
        return {"encoding": "utf-8", "content": raw.decode("utf-8")}
    except UnicodeDecodeError:
        return {"encoding": "base64", "content": base64.b64encode(raw).decode("ascii")}


def _decode_bytes(entry: dict[str, Any]) -> bytes:
    encoding = entry.get("encoding", "utf-8")
    content = entry.get("content", "")
    if encoding == "base64":
        return base64.b64decode(content)
    if encoding == "utf-8":
        return content.encode("utf-8")
    raise ValueError(f"Unknown file content encoding '{encoding}'")


def _split_glob(locator: str) -> tuple[Path, Optional[str]]:
    """Split ``/a/b/*.txt`` into ``(Path('/a/b'), '*.txt')``."""
    path = Path(locator)
    parts = path.parts
    for i, part in enumerate(parts):
        if any(c in part for c in GLOB_CHARS):
            return Path(*parts[:i]), "/".join(parts[i:])
    return path, None


class LocalFileCapability(Capability):
    """Files on the local filesystem.

    A locator naming a file reads as one file; a directory reads as the
    tree of every file under it; a glob reads as the tree of matches,
    keyed relative to the glob's fixed prefix.
    """

    @property
    def name(self) -> str:
        return "files"

    def read(self, locator: str) -> dict[str, Any]:
        root, pattern = _split_glob(locator)
        if pattern is not None:
            matches = [p for p in sorted(root.glob(pattern)) if p.is_file()]
            if not matches:
                raise FileNotFoundError(f"No files match '{locator}'")
            return self._tree(root, matches)

        if root.is_dir():
            return self._tree(root, [p for p in sorted(root.rglob("*")) if p.is_file()])
        if root.is_file():
            return {"kind": "file", **_encode_bytes(root.read_bytes())}
        raise FileNotFoundError(f"No such file or directory: '{locator}'")

    @staticmethod
    def _tree(root: Path, files: list[Path]) -> dict[str, Any]:
        entries = {
            p.relative_to(root).as_posix(): _encode_bytes(p.read_bytes())
            for p in files
        }
        return {"kind": "tree", "files": entries}

    def write(self, locator: str, value: Any) -> None:
        if not isinstance(value, dict) or value.get("kind") not in ("file", "tree"):
            raise ValueError("file value must be a mapping with kind 'file' or 'tree'")

        if value["kind"] == "file":
            target = Path(locator)
            if any(c in locator for c in GLOB_CHARS):
                raise ValueError(f"Cannot write a single file to glob '{locator}'")
            write_atomic(target, _decode_bytes(value))
            return

        root, _ = _split_glob(locator)
        for rel, entry in value.get("files", {}).items():
            target = (root / rel).resolve()
            if root.resolve() not in target.parents:
                raise ValueError(f"Refusing to write '{rel}' outside '{root}'")
            write_atomic(target, _decode_bytes(entry))


# ---------------------------------------------------------------------------
# Registry (JSON mirror)
# ---------------------------------------------------------------------------


class JsonRegistryCapability(Capability):
    """A registry tree mirrored on disk.

    ``HKCU:\\Software\\X`` lives at ``<root>/HKCU/Software/X/``; each key
    directory holds a ``values.json`` and one subdirectory per subkey.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    @property
    def name(self) -> str:
        return "registry"

    def key_dir(self, locator: str) -> Path:
        hive, subkey = split_registry_key(locator)
        parts = [p for p in subkey.split("\\") if p]
        return self.root.joinpath(hive, *parts)

    def read(self, locator: str) -> dict[str, Any]:
        key = self.key_dir(locator)
        if not key.is_dir():
            raise LookupError(f"Registry key not found: '{locator}'")
        return self._read_key(key)

    def _read_key(self, key: Path) -> dict[str, Any]:
        values_file = key / REGISTRY_VALUES_FILE
        values = {}
        if values_file.exists():
            values = json.loads(values_file.read_text(encoding="utf-8"))
        subkeys = {
            child.name: self._read_key(child)
            for child in sorted(key.iterdir())
            if child.is_dir()
        }
        return {"values": values, "subkeys": subkeys}

    def write(self, locator: str, value: Any) -> None:
        if not isinstance(value, dict):
            raise ValueError("registry value must be a mapping with 'values' and 'subkeys'")
        self._write_key(self.key_dir(locator), value)

    def _write_key(self, key: Path, value: dict[str, Any]) -> None:
        key.mkdir(parents=True, exist_ok=True)
        values = value.get("values", {})
        if not isinstance(values, dict):
            raise ValueError(f"registry values under '{key}' must be a mapping")
        write_atomic(
            key / REGISTRY_VALUES_FILE,
            json.dumps(values, indent=2, sort_keys=True).encode("utf-8"),
        )
        for name, sub in (value.get("subkeys") or {}).items():
            if not name or name in (".", "..") or "/" in name or "\\" in name:
                raise ValueError(f"Invalid registry subkey name '{name}'")
            self._write_key(key / name, sub)


# ---------------------------------------------------------------------------
# Application settings (JSON files)
# ---------------------------------------------------------------------------


class JsonApplicationCapability(Capability):
    """Per-application JSON settings files.

    ``app/a.b.c`` reads key path ``a.b.c`` from ``<root>/app.json``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "applications"

    def _split(self, locator: str) -> tuple[Path, list[str]]:
        app, _, setting = locator.partition("/")
        if not app or not setting:
            raise ValueError(f"Application locator must be '<app>/<setting>': '{locator}'")
        return self.root / f"{app}.json", setting.split(".")

    def read(self, locator: str) -> Any:
        path, keys = self._split(locator)
        if not path.exists():
            raise LookupError(f"No settings file for '{locator}'")
        node: Any = json.loads(path.read_text(encoding="utf-8"))
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                raise LookupError(f"Setting not found: '{locator}'")
            node = node[key]
        return node

    def write(self, locator: str, value: Any) -> None:
        path, keys = self._split(locator)
        # Settings of one application share a file.
        with self._lock:
            data: dict[str, Any] = {}
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
            node = data
            for key in keys[:-1]:
                child = node.get(key)
                if not isinstance(child, dict):
                    child = {}
                    node[key] = child
                node = child
            node[keys[-1]] = value
            write_atomic(path, json.dumps(data, indent=2).encode("utf-8"))


# ---------------------------------------------------------------------------
# Capability set
# ---------------------------------------------------------------------------


@dataclass
class CapabilitySet:
    """The capabilities available to one capture or restore run."""

    registry: Optional[Capability] = None
    files: Optional[Capability] = None
    applications: Optional[Capability] = None

    def for_rule_type(self, rule_type: str) -> Capability:
        """Capability serving a rule type.

        Raises:
            LookupError: Nothing is bound for this rule type.
        """
        capability = {
            "registry-key": self.registry,
            "file-path": self.files,
            "application-setting": self.applications,
        }.get(rule_type)
        if capability is None:
            raise LookupError(f"No capability bound for rule type '{rule_type}'")
        return capability


def local_capabilities(
    registry_root: Optional[Path] = None,
    applications_root: Optional[Path] = None,
) -> CapabilitySet:
    """Capability set backed entirely by the local filesystem."""
    return CapabilitySet(
        registry=JsonRegistryCapability(registry_root) if registry_root else None,
        files=LocalFileCapability(),
        applications=JsonApplicationCapability(applications_root) if applications_root else None,
    )
