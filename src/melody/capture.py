"""
State Capture Engine — run a template's rules against live state.

    template -> [resolve source -> read -> transform -> protect?] per rule
             -> StateDocument + OperationResult

Rules are independent, so they run on a bounded worker pool. A failing
rule never stops the run: its value is recorded as MISSING and its
error lands in the result. Exactly one StateDocument is produced per
run.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .capabilities import CapabilitySet
from .concurrency import DEFAULT_WORKERS, call_with_timeout, run_bounded
from .crypto import KeyCache, protect
from .errors import (
    CaptureError,
    EngineError,
    KeyUnavailableError,
    MelodyError,
    RuleCancelledError,
    RuleError,
    RuleTimeoutError,
)
from .models import MISSING, OperationResult, RuleFailure, StateDocument, check_json_value
from .paths import PathResolver
from .templates.schema import Template
from .transforms import TransformError, apply_transform

logger = logging.getLogger("melody.capture")


def resolve_source(resolver: PathResolver, rule: Any, variables: Mapping[str, Any]) -> str:
    """Physical locator for a rule's source.

    Raises:
        PathResolutionError: The locator cannot be mapped.
    """
    if rule.type == "registry-key":
        return resolver.registry_source(rule.source, variables)
    if rule.type == "file-path":
        return resolver.file_source(rule.source, variables)
    return resolver.application_source(rule.source, variables)


def failure_from(rule_id: str, exc: RuleError) -> RuleFailure:
    """Turn a rule error into result data."""
    if exc.rule_id is None:
        exc.rule_id = rule_id
    return RuleFailure(rule_id=rule_id, error=type(exc).__name__, reason=str(exc))


@dataclass(frozen=True)
class _Outcome:
    rule_id: str
    value: Any = MISSING
    failure: Optional[RuleFailure] = None


@dataclass
class CaptureReport:
    """What a capture run hands back: the document and the tally."""

    document: StateDocument
    result: OperationResult

    @property
    def failed_ids(self) -> list[str]:
        return self.result.failed_ids


class CaptureEngine:
    """Executes validated templates against live system state.

    Args:
        capabilities: Read/write bindings per rule type.
        resolver: Path Resolver for source locators.
        keys: Key cache used to protect sensitive values.
        max_workers: Upper bound on concurrently running rules.
        timeout: Seconds allowed for each capability call (None = no limit).
        key_id: Key id to seal under; defaults to the cache's key.
    """

    def __init__(
        self,
        capabilities: CapabilitySet,
        resolver: PathResolver,
        keys: KeyCache,
        max_workers: int = DEFAULT_WORKERS,
        timeout: Optional[float] = 30.0,
        key_id: Optional[str] = None,
    ) -> None:
        self.capabilities = capabilities
        self.resolver = resolver
        self.keys = keys
        self.max_workers = max_workers
        self.timeout = timeout
        self.key_id = key_id

    def capture(
        self,
        template: Template,
        machine_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> CaptureReport:
        """Capture every rule of ``template`` on ``machine_id``.

        Args:
            template: A validated Template.
            machine_id: Machine the state is captured on.
            cancel: Set to stop scheduling further rules.

        Returns:
            CaptureReport with the new StateDocument and the result.

        Raises:
            PathResolutionError: ``machine_id`` is not a valid id.
            EngineError: An unexpected internal failure.
        """
        machine_id = self.resolver.check_machine_id(machine_id)
        variables = template.profile(machine_id)
        logger.info(
            "Capture '%s' v%s on %s: %d rule(s), %d worker(s)",
            template.name, template.version, machine_id,
            len(template.rules), self.max_workers,
        )

        try:
            completed, not_started = run_bounded(
                template.rules,
                lambda rule: self._capture_rule(rule, variables),
                max_workers=self.max_workers,
                cancel=cancel,
            )
        except MelodyError:
            raise
        except Exception as exc:
            raise EngineError(f"Capture of '{template.name}' failed unexpectedly: {exc}") from exc

        outcomes = {rule.id: outcome for rule, outcome in completed}
        for rule in not_started:
            err = RuleCancelledError("Run cancelled before rule started", rule.id)
            outcomes[rule.id] = _Outcome(rule.id, failure=failure_from(rule.id, err))

        values: dict[str, Any] = {}
        failures: list[RuleFailure] = []
        for rule in template.rules:
            outcome = outcomes[rule.id]
            values[rule.id] = outcome.value
            if outcome.failure is not None:
                failures.append(outcome.failure)

        document = StateDocument(
            template_name=template.name,
            template_version=template.version,
            machine_id=machine_id,
            captured_at=datetime.now(timezone.utc),
            values=values,
        )
        missing = len(document.missing_ids)
        result = OperationResult(
            total=len(template.rules),
            succeeded=len(template.rules) - len(failures),
            failed=failures,
            missing=missing,
        )
        logger.info(
            "Capture '%s' done: %d succeeded, %d failed, %d missing",
            template.name, result.succeeded, len(result.failed), missing,
        )
        return CaptureReport(document=document, result=result)

    # ------------------------------------------------------------------
    # Per-rule
    # ------------------------------------------------------------------

    def _capture_rule(self, rule: Any, variables: Mapping[str, Any]) -> _Outcome:
        try:
            value = self._read(rule, variables)
        except RuleError as exc:
            logger.warning("Rule '%s' failed: %s", rule.id, exc)
            return _Outcome(rule.id, failure=failure_from(rule.id, exc))
        logger.debug("Rule '%s' captured", rule.id)
        return _Outcome(rule.id, value=value)

    def _read(self, rule: Any, variables: Mapping[str, Any]) -> Any:
        locator = resolve_source(self.resolver, rule, variables)
        try:
            capability = self.capabilities.for_rule_type(rule.type)
        except LookupError as exc:
            raise CaptureError(rule.id, exc) from exc

        try:
            raw = call_with_timeout(
                lambda: capability.read(locator),
                self.timeout,
                what=f"read of '{locator}'",
            )
        except RuleTimeoutError:
            raise
        except Exception as exc:
            raise CaptureError(rule.id, exc) from exc

        try:
            value = apply_transform(raw, rule.transform)
        except TransformError as exc:
            raise CaptureError(rule.id, exc) from exc

        try:
            check_json_value(value)
        except (TypeError, ValueError) as exc:
            raise CaptureError(rule.id, exc) from exc

        if rule.sensitive:
            key_id = self.key_id or self.keys.key_id
            if key_id is None:
                raise KeyUnavailableError(
                    f"Rule '{rule.id}' is sensitive but no encryption key is initialized",
                    rule.id,
                )
            value = protect(value, key_id, self.keys)
        return value
