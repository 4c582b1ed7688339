"""
Persisted state documents.

Documents live in the backup tree under the scope of the template that
produced them::

    <root>/shared/states/<template>/state-<timestamp>.json
    <root>/<machine_id>/states/<template>/state-<timestamp>.json

Every capture writes a new file; existing documents are never
rewritten.
"""

from __future__ import annotations

import logging
from datetime import timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .capabilities import write_atomic
from .errors import MelodyError
from .models import Scope, StateDocument
from .paths import LogicalLocation, PathResolver, slugify

logger = logging.getLogger("melody.store")

STATES_DIR = "states"


class StateStoreError(MelodyError):
    """A state document could not be read or written."""


class StateStore:
    """Saves and finds StateDocuments in the backup tree.

    Args:
        resolver: Path Resolver bound to the storage root.
    """

    def __init__(self, resolver: PathResolver) -> None:
        self.resolver = resolver

    def _dir(self, template_name: str, scope: Scope, machine_id: Optional[str]) -> Path:
        return self.resolver.resolve(f"{STATES_DIR}/{slugify(template_name)}", scope, machine_id)

    def save(self, document: StateDocument, scope: Scope | str) -> Path:
        """Write ``document`` as a new file.

        Returns:
            Path to the written document.

        Raises:
            StateStoreError: The document cannot be serialized.
        """
        scope = Scope(scope)
        try:
            text = document.to_json()
        except ValueError as exc:
            raise StateStoreError(
                f"State document for '{document.template_name}' cannot be serialized: {exc}"
            ) from exc
        stamp = document.captured_at.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        target_dir = self._dir(document.template_name, scope, document.machine_id)
        target = target_dir / f"state-{stamp}.json"
        n = 1
        while target.exists():
            target = target_dir / f"state-{stamp}-{n}.json"
            n += 1

        write_atomic(target, text.encode("utf-8"))
        logger.info("State document saved: %s", target)
        return target

    @staticmethod
    def load(path: Path | str) -> StateDocument:
        """Read a persisted document.

        Raises:
            StateStoreError: Missing file or invalid content.
        """
        p = Path(path).expanduser()
        try:
            return StateDocument.from_json(p.read_bytes())
        except OSError as exc:
            raise StateStoreError(f"Cannot read state document {p}: {exc}") from exc
        except ValidationError as exc:
            raise StateStoreError(f"Invalid state document {p}: {exc}") from exc

    def list_states(
        self,
        scope: Scope | str,
        machine_id: Optional[str] = None,
        template_name: Optional[str] = None,
    ) -> list[Path]:
        """Document paths, newest first."""
        scope = Scope(scope)
        if template_name:
            dirs = [self._dir(template_name, scope, machine_id)]
        else:
            base = self.resolver.resolve(STATES_DIR, scope, machine_id)
            dirs = sorted(p for p in base.iterdir() if p.is_dir()) if base.is_dir() else []
        found: list[Path] = []
        for d in dirs:
            if d.is_dir():
                found.extend(d.glob("state-*.json"))
        return sorted(found, key=lambda p: p.name, reverse=True)

    def latest(
        self,
        template_name: str,
        scope: Scope | str,
        machine_id: Optional[str] = None,
    ) -> Optional[Path]:
        states = self.list_states(scope, machine_id, template_name)
        return states[0] if states else None

    def describe(self, path: Path) -> dict[str, Any]:
        """Summary of a stored document for listings."""
        location: LogicalLocation = self.resolver.identify(path)
        document = self.load(path)
        return {
            "path": str(path),
            "scope": location.scope.value,
            "machine_id": document.machine_id,
            "template": document.template_name,
            "version": document.template_version,
            "captured_at": document.captured_at.isoformat(),
            "rules": len(document.values),
            "missing": len(document.missing_ids),
        }
