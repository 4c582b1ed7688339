"""Shared test fixtures for melody."""

from __future__ import annotations

import copy
import threading
import time
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest

from melody.capabilities import Capability, CapabilitySet
from melody.concurrency import PathLocks
from melody.crypto import KeyCache, default_keys
from melody.paths import PathResolver
from melody.templates import Template, load_template_string

SECRET = b"correct horse battery staple"

DEMO_TEMPLATE = r"""
name: demo
version: "2.1"
scope: shared
description: Demo application settings
variables:
  app_dir: 'C:\Apps\Demo'
machine_variables:
  M2:
    app_dir: 'D:\Apps\Demo'
rules:
  - id: theme
    type: registry-key
    source: 'HKCU:\Software\Demo\Theme'
  - id: settings
    type: file-path
    source: '{{app_dir}}\settings.ini'
  - id: token
    type: application-setting
    source: 'demo/auth.token'
    sensitive: true
"""

THEME_KEY = "HKCU:\\Software\\Demo\\Theme"
SETTINGS_FILE = "C:\\Apps\\Demo\\settings.ini"
TOKEN_SETTING = "demo/auth.token"

THEME_VALUE = {"values": {"Mode": "dark", "Accent": 3}, "subkeys": {}}
SETTINGS_VALUE = {"kind": "file", "encoding": "utf-8", "content": "[ui]\nzoom=110\n"}
TOKEN_VALUE = "s3cr3t-token"


class MemoryCapability(Capability):
    """In-memory capability that records every call.

    Args:
        label: Name reported by ``name``.
        data: Initial locator -> value mapping.
        fail: Locators whose reads and writes raise OSError.
        delay: Seconds each call sleeps before doing anything.
    """

    def __init__(
        self,
        label: str = "memory",
        data: Optional[dict[str, Any]] = None,
        fail: Iterable[str] = (),
        delay: float = 0.0,
    ) -> None:
        self.label = label
        self.data = copy.deepcopy(data or {})
        self.fail = set(fail)
        self.delay = delay
        self.reads: list[str] = []
        self.writes: list[tuple[str, Any]] = []
        self.active = 0
        self.peak = 0
        self.peak_per_target: dict[str, int] = {}
        self._active_per_target: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.label

    def _enter(self, locator: str) -> None:
        key = PathLocks.normalize(locator)
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            n = self._active_per_target.get(key, 0) + 1
            self._active_per_target[key] = n
            self.peak_per_target[key] = max(self.peak_per_target.get(key, 0), n)

    def _leave(self, locator: str) -> None:
        key = PathLocks.normalize(locator)
        with self._lock:
            self.active -= 1
            self._active_per_target[key] -= 1

    def read(self, locator: str) -> Any:
        with self._lock:
            self.reads.append(locator)
        self._enter(locator)
        try:
            if self.delay:
                time.sleep(self.delay)
            if locator in self.fail:
                raise OSError(f"unreachable: {locator}")
            if locator not in self.data:
                raise LookupError(f"not found: {locator}")
            return copy.deepcopy(self.data[locator])
        finally:
            self._leave(locator)

    def write(self, locator: str, value: Any) -> None:
        self._enter(locator)
        try:
            if self.delay:
                time.sleep(self.delay)
            if locator in self.fail:
                raise OSError(f"unreachable: {locator}")
            with self._lock:
                self.writes.append((locator, copy.deepcopy(value)))
                self.data[locator] = copy.deepcopy(value)
        finally:
            self._leave(locator)

    @property
    def written(self) -> list[str]:
        return [locator for locator, _ in self.writes]


def memory_set(**kwargs: MemoryCapability) -> CapabilitySet:
    return CapabilitySet(
        registry=kwargs.get("registry"),
        files=kwargs.get("files"),
        applications=kwargs.get("applications"),
    )


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    """Provide an empty backup tree root."""
    root = tmp_path / "melody"
    root.mkdir()
    return root


@pytest.fixture
def env() -> dict[str, str]:
    """A fixed Windows-like environment for locator expansion."""
    return {
        "USERPROFILE": "C:\\Users\\tester",
        "APPDATA": "C:\\Users\\tester\\AppData\\Roaming",
        "LOCALAPPDATA": "C:\\Users\\tester\\AppData\\Local",
        "HOME": "/home/tester",
    }


@pytest.fixture
def resolver(storage_root: Path, env: dict[str, str]) -> PathResolver:
    """Native-environment resolver bound to the test backup tree."""
    return PathResolver(storage_root, env=env)


@pytest.fixture
def keys() -> KeyCache:
    """A key cache with a derived key; cleared afterwards."""
    cache = KeyCache()
    cache.init(SECRET)
    yield cache
    cache.clear()


@pytest.fixture(autouse=True)
def _clear_default_keys():
    """The CLI uses the process-wide cache; never leak it between tests."""
    yield
    default_keys.clear()


@pytest.fixture
def demo_template() -> Template:
    """A shared-scope template with one rule of each type."""
    return load_template_string(DEMO_TEMPLATE, source="demo.yaml")


@pytest.fixture
def live() -> dict[str, MemoryCapability]:
    """Capabilities holding the demo template's live state."""
    return {
        "registry": MemoryCapability("registry", {THEME_KEY: THEME_VALUE}),
        "files": MemoryCapability("files", {SETTINGS_FILE: SETTINGS_VALUE}),
        "applications": MemoryCapability("applications", {TOKEN_SETTING: TOKEN_VALUE}),
    }


@pytest.fixture
def blank() -> dict[str, MemoryCapability]:
    """Empty capabilities to restore into."""
    return {
        "registry": MemoryCapability("registry"),
        "files": MemoryCapability("files"),
        "applications": MemoryCapability("applications"),
    }
