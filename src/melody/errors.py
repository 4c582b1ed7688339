"""Error taxonomy for capture and restore runs.

Two families:

* Fatal errors abort an operation before any state is touched
  (``TemplateValidationError``, ``VersionMismatchError``) or signal an
  internal defect (``EngineError``).
* Rule errors (``RuleError`` subclasses) belong to one rule. The engine
  records them in the operation result and carries on with the rest.
"""

from __future__ import annotations

from typing import Optional


class MelodyError(Exception):
    """Base class for every error raised by melody."""


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------


class TemplateValidationError(MelodyError):
    """A template document failed validation.

    Raised before any capture or restore work starts.

    Attributes:
        problems: Every validation problem found, one line each.
    """

    def __init__(self, problems: list[str], source: Optional[str] = None) -> None:
        self.problems = list(problems)
        self.source = source
        where = f" in {source}" if source else ""
        detail = "; ".join(self.problems) or "invalid template"
        super().__init__(f"Template validation failed{where}: {detail}")


class VersionMismatchError(MelodyError):
    """A state document does not belong to the template being restored."""

    def __init__(self, expected: str, actual: str, what: str = "version") -> None:
        self.expected = expected
        self.actual = actual
        self.what = what
        super().__init__(
            f"State document template {what} '{actual}' does not match "
            f"template {what} '{expected}'"
        )


class EngineError(MelodyError):
    """Unexpected internal failure. Always fatal for the whole operation."""


# ---------------------------------------------------------------------------
# Per-rule
# ---------------------------------------------------------------------------


class RuleError(MelodyError):
    """A failure attributable to one rule.

    Attributes:
        rule_id: The rule that failed, when known at raise time.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(message)


class CaptureError(RuleError):
    """Reading a rule's source failed."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Capture of rule '{rule_id}' failed: {cause}",
            rule_id=rule_id,
            cause=cause,
        )


class ApplyError(RuleError):
    """Writing a rule's value back to the system failed."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Restore of rule '{rule_id}' failed: {cause}",
            rule_id=rule_id,
            cause=cause,
        )


class EncryptionError(RuleError):
    """Protecting a sensitive value failed."""


class KeyUnavailableError(EncryptionError):
    """No encryption key has been derived for this process."""


class DecryptionError(RuleError):
    """An encrypted field could not be authenticated or decrypted."""


class PathResolutionError(RuleError):
    """A logical path or locator cannot be mapped to a physical location."""


class RuleTimeoutError(RuleError, TimeoutError):
    """A call into external state did not finish within the timeout."""


class RuleCancelledError(RuleError):
    """The run was cancelled before this rule was scheduled."""
