"""
Pydantic models for captured state and operation results.

A StateDocument is what one capture run produces and what one restore
run consumes. It is frozen on creation; capturing again always yields
a new document.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_serializer,
    field_validator,
)


class Scope(str, Enum):
    """Where a template's state lives in the backup tree."""

    SHARED = "shared"
    MACHINE = "machine"


class _Missing:
    """Marker for a rule whose value could not be captured."""

    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __reduce__(self) -> str:
        return "MISSING"


MISSING = _Missing()
MISSING_MARKER = "MISSING"


class EncryptedField(BaseModel):
    """An authenticated ciphertext standing in for a sensitive value.

    All binary fields are base64 text so the document stays JSON.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ciphertext: str
    nonce: str
    key_id: str = Field(alias="keyId")

    @classmethod
    def looks_like(cls, raw: Any) -> bool:
        """Return True if a raw persisted value is an encrypted field."""
        return isinstance(raw, dict) and set(raw) == {"ciphertext", "nonce", "keyId"}


StoredValue = Union[EncryptedField, _Missing, Any]

# Wraps a captured value whose plain form would read back as a marker.
PLAIN_KEY = "$plain"


def _is_escape(raw: Any) -> bool:
    return isinstance(raw, dict) and set(raw) == {PLAIN_KEY}


def is_reserved(raw: Any) -> bool:
    """Return True if a plain value collides with a persisted marker."""
    return (
        (isinstance(raw, str) and raw == MISSING_MARKER)
        or EncryptedField.looks_like(raw)
        or _is_escape(raw)
    )


def decode_value(raw: Any) -> StoredValue:
    """Turn a persisted value back into its in-memory form."""
    if isinstance(raw, str) and raw == MISSING_MARKER:
        return MISSING
    if EncryptedField.looks_like(raw):
        return EncryptedField.model_validate(raw)
    if _is_escape(raw):
        return raw[PLAIN_KEY]
    return raw


def encode_value(value: StoredValue) -> Any:
    """Turn an in-memory value into its persisted JSON form."""
    if value is MISSING:
        return MISSING_MARKER
    if isinstance(value, EncryptedField):
        return value.model_dump(by_alias=True)
    if is_reserved(value):
        return {PLAIN_KEY: value}
    return value


def check_json_value(value: Any, where: str = "value") -> None:
    """Ensure ``value`` is plain JSON data that survives a round trip.

    Raises:
        TypeError: A container or leaf of a non-JSON type.
        ValueError: A non-finite float.
    """
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{where} is {value!r}, which JSON cannot represent")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            check_json_value(item, f"{where}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{where} has a non-text key {key!r}")
            check_json_value(item, f"{where}.{key}")
        return
    raise TypeError(f"{where} of type {type(value).__name__} is not JSON data")


class StateDocument(BaseModel):
    """Immutable snapshot produced by one capture run.

    Attributes:
        template_name: Name of the template that produced it.
        template_version: Exact template version at capture time.
        machine_id: Machine the state was captured on.
        captured_at: UTC capture time.
        values: Rule id -> captured value, EncryptedField, or MISSING.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    template_name: str = Field(alias="templateName")
    template_version: str = Field(alias="templateVersion")
    machine_id: str = Field(alias="machineId")
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="capturedAt",
    )
    values: dict[str, Any] = Field(default_factory=dict)

    @field_validator("template_version", mode="before")
    @classmethod
    def version_as_text(cls, v: Any) -> str:
        """Versions compare as text; YAML may hand us numbers."""
        return str(v)

    @field_validator("values", mode="before")
    @classmethod
    def decode_values(cls, v: Any, info: ValidationInfo) -> dict[str, Any]:
        """Markers are decoded from persisted JSON only.

        Values handed over in memory are already in their final form.
        """
        if not isinstance(v, dict):
            raise ValueError("values must be a mapping of rule id to value")
        if info.mode != "json":
            return {str(k): raw for k, raw in v.items()}
        return {str(k): decode_value(raw) for k, raw in v.items()}

    @field_serializer("values")
    def encode_values(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: encode_value(v) for k, v in values.items()}

    @property
    def missing_ids(self) -> list[str]:
        """Rule ids recorded as MISSING."""
        return [k for k, v in self.values.items() if v is MISSING]

    def to_json(self) -> str:
        """Serialize to the persisted JSON form."""
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> "StateDocument":
        """Parse the persisted JSON form."""
        return cls.model_validate_json(text)


class RuleFailure(BaseModel):
    """One rule that did not succeed, with the reason why."""

    rule_id: str
    error: str = Field(description="Error class name, e.g. 'CaptureError'")
    reason: str


class OperationResult(BaseModel):
    """Outcome counts for a capture or restore run.

    This is the stable contract surfaced to the CLI and any automation
    built on top of the engine.
    """

    total: int = 0
    succeeded: int = 0
    failed: list[RuleFailure] = Field(default_factory=list)
    missing: int = 0

    @property
    def failed_ids(self) -> list[str]:
        return [f.rule_id for f in self.failed]

    @property
    def ok(self) -> bool:
        return not self.failed
