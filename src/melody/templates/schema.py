"""
Pydantic models for capture templates.

A Template lists the rules to capture on one machine and replay on
another. Each rule is one of a closed set of variants, selected by its
``type`` field:

- ``registry-key``         a registry key and its subtree
- ``file-path``            a file, directory, or glob
- ``application-setting``  a setting read through an application binding

Templates are frozen once validated; rules are held in a tuple.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config import merge
from ..models import Scope
from ..paths import HIVE_ALIASES, template_variables

RULE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

_APP_LOCATOR_RE = re.compile(r"^[A-Za-z0-9_.\-]+/\S.*$")
_FILE_PREFIX_RE = re.compile(
    r"^(?:[A-Za-z]:[\\/]|/|~|%[A-Za-z_][A-Za-z0-9_()]*%|\$env:|\$\{env:|\$[A-Za-z_]|\{\{)"
)
_REGISTRY_PREFIX_RE = re.compile(r"^([A-Za-z_]+):?[\\/]")


class Transform(BaseModel):
    """Optional reshaping applied to a captured value before storage.

    ``include``, ``exclude`` and ``redact`` take dotted key paths into
    mapping values. ``replace`` maps scalar values to new scalars.
    """

    model_config = ConfigDict(frozen=True)

    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    redact: Tuple[str, ...] = ()
    replace: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("include", "exclude", "redact")
    @classmethod
    def paths_not_empty(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        for path in v:
            if not path or any(not part for part in path.split(".")):
                raise ValueError(f"invalid key path '{path}'")
        return v

    @property
    def is_empty(self) -> bool:
        return not (self.include or self.exclude or self.redact or self.replace)


class _RuleBase(BaseModel):
    """Fields shared by every rule variant."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(description="Unique within the template")
    source: str = Field(description="Locator of the state to capture")
    sensitive: bool = Field(default=False, description="Encrypt before persisting")
    transform: Optional[Transform] = None
    name: Optional[str] = Field(default=None, description="Human-readable label")
    description: Optional[str] = None
    scope: Optional[Scope] = Field(
        default=None,
        description="Per-rule scope; defaults to the template's scope",
    )

    @field_validator("id")
    @classmethod
    def id_must_be_clean(cls, v: str) -> str:
        if not RULE_ID_RE.match(v):
            raise ValueError(f"rule id must be alphanumeric with '-', '_' or '.': got '{v}'")
        return v

    @field_validator("source")
    @classmethod
    def source_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("source locator is empty")
        return v.strip()


class RegistryKeyRule(_RuleBase):
    """Capture a registry key, its values, and its subkeys."""

    type: Literal["registry-key"] = "registry-key"

    @field_validator("source")
    @classmethod
    def known_hive(cls, v: str) -> str:
        m = _REGISTRY_PREFIX_RE.match(v)
        if not m or m.group(1).upper() not in HIVE_ALIASES:
            raise ValueError(f"registry locator must start with a known hive (e.g. 'HKCU:\\'): got '{v}'")
        return v


class FilePathRule(_RuleBase):
    """Capture a file, a directory tree, or a glob of files."""

    type: Literal["file-path"] = "file-path"

    @field_validator("source")
    @classmethod
    def absolute_or_rooted(cls, v: str) -> str:
        if not _FILE_PREFIX_RE.match(v):
            raise ValueError(
                f"file locator must be absolute or start with '~' or an environment variable: got '{v}'"
            )
        return v


class ApplicationSettingRule(_RuleBase):
    """Capture a setting through an external application binding."""

    type: Literal["application-setting"] = "application-setting"

    @field_validator("source")
    @classmethod
    def app_and_setting(cls, v: str) -> str:
        if not _APP_LOCATOR_RE.match(v):
            raise ValueError(f"application locator must be '<application>/<setting>': got '{v}'")
        return v

    @property
    def application(self) -> str:
        return self.source.split("/", 1)[0]


CaptureRule = Annotated[
    Union[RegistryKeyRule, FilePathRule, ApplicationSettingRule],
    Field(discriminator="type"),
]

RULE_TYPES = ("registry-key", "file-path", "application-setting")


class Template(BaseModel):
    """A validated, immutable capture template.

    Attributes:
        name: Template name; also the key for stored state documents.
        version: Compared verbatim against StateDocument.template_version.
        scope: Default scope for rules.
        variables: Shared values substituted into ``{{name}}`` locators.
        machine_variables: Per-machine overrides of ``variables``.
        rules: Ordered capture rules.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    version: str
    scope: Scope = Scope.SHARED
    description: Optional[str] = None
    author: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    machine_variables: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    rules: Tuple[CaptureRule, ...] = ()

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("template name is empty")
        return v.strip()

    @field_validator("version", mode="before")
    @classmethod
    def version_as_text(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("template version is empty")
        if isinstance(v, bool) or not isinstance(v, (str, int, float)):
            raise ValueError(f"template version must be text or a number: got {v!r}")
        return str(v).strip()

    @model_validator(mode="after")
    def rules_are_coherent(self) -> "Template":
        problems: list[str] = []

        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                problems.append(f"duplicate rule id '{rule.id}'")
            seen.add(rule.id)

        if self.scope is Scope.MACHINE:
            for rule in self.rules:
                if rule.scope is Scope.SHARED:
                    problems.append(
                        f"rule '{rule.id}' is shared-scoped inside a machine-scoped template"
                    )

        declared = set(self.variables)
        for overrides in self.machine_variables.values():
            declared.update(overrides)
        for rule in self.rules:
            for var in template_variables(rule.source):
                if var not in declared:
                    problems.append(f"rule '{rule.id}' references undeclared variable '{var}'")

        if problems:
            raise ValueError("; ".join(problems))
        return self

    def rule_scope(self, rule: "_RuleBase") -> Scope:
        """Effective scope of a rule."""
        return rule.scope or self.scope

    @property
    def document_scope(self) -> Scope:
        """Tree that state documents of this template are stored in.

        A document holding any machine-scoped value belongs to the
        machine it was captured on; otherwise it is shared.
        """
        if any(self.rule_scope(r) is Scope.MACHINE for r in self.rules):
            return Scope.MACHINE
        return Scope.SHARED

    def get_rule(self, rule_id: str) -> Optional[_RuleBase]:
        return next((r for r in self.rules if r.id == rule_id), None)

    def profile(self, machine_id: Optional[str]) -> dict[str, Any]:
        """Locator variables for ``machine_id`` (shared merged with machine)."""
        return merge(self.variables, self.machine_variables.get(machine_id or "", {}))

    @property
    def sensitive_count(self) -> int:
        return sum(1 for r in self.rules if r.sensitive)
