"""
Structured workflow errors.

Every failure that leaves the workflow core carries a machine-readable
``code``, a ``category`` used to pick the caller-facing error class, a
``retryable`` flag and human ``remediation`` text.

Only InputError is raised out of ``run_workflow``; the other classes are
collected into blockers and re-raised by ``WorkflowResult.raise_for_status()``.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow core errors."""

    category = "unexpected"
    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        remediation: str = "",
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.remediation = remediation
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "retryable": self.retryable,
            "message": self.message,
            "remediation": self.remediation,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InputError(WorkflowError):
    """Malformed or missing intent field. Fails fast, never retried."""

    category = "input"


class ConfirmationError(WorkflowError):
    """Missing/expired/mismatched confirm token or production flag."""

    category = "confirmation"


class PolicyError(WorkflowError):
    """One or more policy guards blocked the request."""

    category = "policy"


class IdempotencyError(WorkflowError):
    """The run id already reached (or is reaching) a ledger."""

    category = "idempotency"

    def __init__(
        self,
        code: str,
        message: str,
        remediation: str = "",
        previous: Any = None,
    ):
        super().__init__(code, message, remediation)
        self.previous = previous

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        previous = self.previous
        out["previous"] = previous.to_dict() if hasattr(previous, "to_dict") else previous
        return out


class AdapterError(WorkflowError):
    """Remote ledger call failed, timed out or returned garbage."""

    category = "adapter"
    retryable = True


class IntegrityError(WorkflowError):
    """Malformed cycle trigger proof or enforcement response."""

    category = "integrity"


ERROR_CLASSES = {
    cls.category: cls
    for cls in (
        InputError,
        ConfirmationError,
        PolicyError,
        IdempotencyError,
        AdapterError,
        IntegrityError,
    )
}

# order used to pick the single error class for a blocked result
CATEGORY_PRECEDENCE = (
    "input",
    "idempotency",
    "confirmation",
    "integrity",
    "policy",
    "adapter",
    "unexpected",
)


def error_for_category(category: str):
    return ERROR_CLASSES.get(category, WorkflowError)
