"""
Restore Orchestrator — replay a StateDocument onto a system.

Each restore walks a fixed state machine::

    LOADED -> VALIDATED -> CAPTURED_LOADED -> APPLYING -> COMPLETED
                                                       -> PARTIALLY_FAILED

A template/document mismatch is fatal and stops the run before
APPLYING, so nothing is written. Once applying, every rule is attempted
independently; MISSING values are skipped and counted, failures are
collected with their reasons.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .capabilities import CapabilitySet
from .capture import failure_from, resolve_source
from .concurrency import DEFAULT_WORKERS, PathLocks, call_with_timeout, run_bounded
from .crypto import KeyCache, unprotect
from .errors import (
    ApplyError,
    DecryptionError,
    EngineError,
    MelodyError,
    RuleCancelledError,
    RuleError,
    RuleTimeoutError,
    VersionMismatchError,
)
from .models import MISSING, EncryptedField, OperationResult, RuleFailure, StateDocument
from .paths import PathResolver
from .templates.schema import Template

logger = logging.getLogger("melody.restore")


class RestoreState(str, Enum):
    """Lifecycle of one restore invocation."""

    LOADED = "loaded"
    VALIDATED = "validated"
    CAPTURED_LOADED = "captured-loaded"
    APPLYING = "applying"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially-failed"
    FAILED = "failed"


_TRANSITIONS: dict[RestoreState, set[RestoreState]] = {
    RestoreState.LOADED: {RestoreState.VALIDATED, RestoreState.FAILED},
    RestoreState.VALIDATED: {RestoreState.CAPTURED_LOADED, RestoreState.FAILED},
    RestoreState.CAPTURED_LOADED: {RestoreState.APPLYING, RestoreState.FAILED},
    RestoreState.APPLYING: {
        RestoreState.COMPLETED,
        RestoreState.PARTIALLY_FAILED,
        RestoreState.FAILED,
    },
}


class RestoreRun:
    """Tracks the state machine of a single restore."""

    def __init__(self, template_name: str) -> None:
        self.template_name = template_name
        self.state = RestoreState.LOADED
        self.history: list[RestoreState] = [RestoreState.LOADED]

    def advance(self, new_state: RestoreState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise EngineError(
                f"Illegal restore transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Restore '%s': %s -> %s", self.template_name, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    @property
    def finished(self) -> bool:
        return self.state not in _TRANSITIONS


@dataclass
class RestoreReport:
    """Outcome of a restore run."""

    state: RestoreState
    result: OperationResult
    history: list[RestoreState] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state is RestoreState.COMPLETED

    @property
    def failed_ids(self) -> list[str]:
        return self.result.failed_ids


@dataclass(frozen=True)
class _Work:
    rule_id: str
    rule: Any
    value: Any


class RestoreOrchestrator:
    """Writes captured values back through the capabilities.

    Args:
        capabilities: Read/write bindings per rule type.
        resolver: Path Resolver for target locators.
        keys: Key cache used to unprotect sensitive values.
        max_workers: Upper bound on concurrently applied rules.
        timeout: Seconds allowed for each write (None = no limit).
        locks: Per-target write locks; share one across orchestrators
            that may touch the same targets.
    """

    def __init__(
        self,
        capabilities: CapabilitySet,
        resolver: PathResolver,
        keys: KeyCache,
        max_workers: int = DEFAULT_WORKERS,
        timeout: Optional[float] = 30.0,
        locks: Optional[PathLocks] = None,
    ) -> None:
        self.capabilities = capabilities
        self.resolver = resolver
        self.keys = keys
        self.max_workers = max_workers
        self.timeout = timeout
        self.locks = locks if locks is not None else PathLocks()

    def restore(
        self,
        template: Template,
        document: StateDocument,
        machine_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RestoreReport:
        """Replay ``document`` using ``template``'s rules.

        Args:
            template: The validated Template, at the document's version.
            document: State captured earlier.
            machine_id: Machine being restored; selects machine
                variables. Defaults to the document's machine.
            cancel: Set to stop scheduling further rules.

        Raises:
            VersionMismatchError: Template and document disagree on
                name or version. Raised before any write.
            EngineError: An unexpected internal failure.
        """
        target_machine = self.resolver.check_machine_id(machine_id or document.machine_id)
        run = RestoreRun(template.name)

        if document.template_name != template.name:
            run.advance(RestoreState.FAILED)
            raise VersionMismatchError(template.name, document.template_name, what="name")
        if document.template_version != template.version:
            run.advance(RestoreState.FAILED)
            logger.error(
                "Restore '%s' refused: document v%s, template v%s",
                template.name, document.template_version, template.version,
            )
            raise VersionMismatchError(template.version, document.template_version)
        run.advance(RestoreState.VALIDATED)

        variables = template.profile(target_machine)

        work: list[_Work] = []
        skipped: list[str] = []
        for rule_id, value in document.values.items():
            if value is MISSING:
                skipped.append(rule_id)
                continue
            work.append(_Work(rule_id, template.get_rule(rule_id), value))
        run.advance(RestoreState.CAPTURED_LOADED)

        logger.info(
            "Restore '%s' v%s onto %s: %d to apply, %d missing",
            template.name, template.version, target_machine, len(work), len(skipped),
        )
        run.advance(RestoreState.APPLYING)
        try:
            completed, not_started = run_bounded(
                work,
                lambda item: self._apply(item, variables),
                max_workers=self.max_workers,
                cancel=cancel,
            )
        except MelodyError:
            run.advance(RestoreState.FAILED)
            raise
        except Exception as exc:
            run.advance(RestoreState.FAILED)
            raise EngineError(f"Restore of '{template.name}' failed unexpectedly: {exc}") from exc

        failures_by_id: dict[str, RuleFailure] = {}
        for item, failure in completed:
            if failure is not None:
                failures_by_id[item.rule_id] = failure
        for item in not_started:
            err = RuleCancelledError("Run cancelled before rule started", item.rule_id)
            failures_by_id[item.rule_id] = failure_from(item.rule_id, err)

        failures = [failures_by_id[w.rule_id] for w in work if w.rule_id in failures_by_id]
        result = OperationResult(
            total=len(document.values),
            succeeded=len(work) - len(failures),
            failed=failures,
            missing=len(skipped),
        )
        run.advance(RestoreState.PARTIALLY_FAILED if failures else RestoreState.COMPLETED)

        logger.info(
            "Restore '%s' %s: %d succeeded, %d failed, %d missing",
            template.name, run.state.value, result.succeeded, len(failures), len(skipped),
        )
        return RestoreReport(
            state=run.state,
            result=result,
            history=list(run.history),
            skipped=skipped,
        )

    # ------------------------------------------------------------------
    # Per-rule
    # ------------------------------------------------------------------

    def _apply(self, item: _Work, variables: dict[str, Any]) -> Optional[RuleFailure]:
        try:
            self._write(item, variables)
        except RuleError as exc:
            logger.warning("Rule '%s' not restored: %s", item.rule_id, exc)
            return failure_from(item.rule_id, exc)
        logger.debug("Rule '%s' restored", item.rule_id)
        return None

    def _write(self, item: _Work, variables: dict[str, Any]) -> None:
        rule = item.rule
        if rule is None:
            raise ApplyError(item.rule_id, LookupError("rule is not defined in the template"))

        value = item.value
        if isinstance(value, EncryptedField):
            value = unprotect(value, self.keys)
        elif rule.sensitive:
            raise DecryptionError(
                f"Rule '{rule.id}' is sensitive but its stored value is not encrypted",
                rule.id,
            )

        locator = resolve_source(self.resolver, rule, variables)
        try:
            capability = self.capabilities.for_rule_type(rule.type)
        except LookupError as exc:
            raise ApplyError(rule.id, exc) from exc

        # A rule that gives up waiting never writes. A timed-out write
        # holds the lock until the capability returns.
        lock = self.locks.acquire(locator, self.timeout)

        def _locked_write() -> None:
            try:
                capability.write(locator, value)
            finally:
                lock.release()

        try:
            call_with_timeout(_locked_write, self.timeout, what=f"write of '{locator}'")
        except RuleTimeoutError:
            raise
        except Exception as exc:
            raise ApplyError(rule.id, exc) from exc
