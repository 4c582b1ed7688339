"""Value transforms applied between reading a rule and storing it."""

from __future__ import annotations

import copy
from typing import Any, Mapping

from .templates.schema import Transform

REDACTED = "<redacted>"


class TransformError(ValueError):
    """A transform cannot be applied to the value it was given."""


def _split(path: str) -> list[str]:
    return path.split(".")


def _get(tree: Mapping[str, Any], parts: list[str]) -> tuple[bool, Any]:
    node: Any = tree
    for part in parts:
        if not isinstance(node, Mapping) or part not in node:
            return False, None
        node = node[part]
    return True, node


def _put(tree: dict[str, Any], parts: list[str], value: Any) -> None:
    node = tree
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def _drop(tree: dict[str, Any], parts: list[str]) -> None:
    node: Any = tree
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        node = node[part]
    if isinstance(node, dict):
        node.pop(parts[-1], None)


def _replace_scalars(value: Any, table: Mapping[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: _replace_scalars(v, table) for k, v in value.items()}
    if isinstance(value, list):
        return [_replace_scalars(v, table) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        key = value if isinstance(value, str) else str(value)
        if key in table:
            return table[key]
    return value


def apply_transform(value: Any, transform: Transform | None) -> Any:
    """Apply include, exclude, redact, then replace.

    The input is never modified.

    Raises:
        TransformError: Key-path operations on a non-mapping value.
    """
    if transform is None or transform.is_empty:
        return value

    result = copy.deepcopy(value)
    if transform.include or transform.exclude or transform.redact:
        if not isinstance(result, dict):
            raise TransformError(
                f"include/exclude/redact need a mapping value, got {type(value).__name__}"
            )

    if transform.include:
        kept: dict[str, Any] = {}
        for path in transform.include:
            parts = _split(path)
            found, node = _get(result, parts)
            if found:
                _put(kept, parts, node)
        result = kept

    for path in transform.exclude:
        _drop(result, _split(path))

    for path in transform.redact:
        parts = _split(path)
        found, _ = _get(result, parts)
        if found:
            _put(result, parts, REDACTED)

    if transform.replace:
        result = _replace_scalars(result, transform.replace)

    return result
