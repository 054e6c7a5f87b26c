"""
Engine-wide exception hierarchy.

Every service raises one of these types so callers can map failures to a
precise user-facing message without parsing strings.

Three families:
  - NotFoundError / ValidationError / ConflictError: generic input and
    lookup failures.
  - WorkflowError subclasses: expected, recoverable outcomes of an action
    (wrong state, wrong order, wrong actor). Callers show the message and
    do not retry.
  - ConfigurationError and ConcurrencyConflictError: not WorkflowErrors.
    The first is fatal for the chain involved; the second means the whole
    user action may be retried.

Usage:
    from approvalflow.core.exceptions import NotFoundError, OutOfOrderApprovalError

    raise NotFoundError(resource="Request", resource_id=request_id)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Request", "Section").
        resource_id: The key that was looked up.
    """

    code = "NotFound"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "resource": self.resource}


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    code = "ValidationError"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "details": self.details}


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value."""

    code = "Conflict"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


# ── Action outcomes ──────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base for expected validation outcomes of an engine action."""

    code = "WorkflowError"

    def __init__(self, request_id: str | None, message: str) -> None:
        self.request_id = request_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "request_id": self.request_id}


class InvalidTransitionError(WorkflowError):
    """Action attempted from a terminal or mismatched state."""

    code = "InvalidTransition"

    def __init__(self, request_id: str | None, action: str, status: str, reason: str | None = None) -> None:
        msg = f"Cannot {action} request {request_id} (status={status})"
        if reason:
            msg += f": {reason}"
        super().__init__(request_id, msg)
        self.action = action
        self.status = status
        self.reason = reason


class OutOfOrderApprovalError(WorkflowError):
    """Approval for a step whose predecessor step is not yet satisfied."""

    code = "OutOfOrderApproval"

    def __init__(self, request_id: str, attempted_step: int, pending_step: int) -> None:
        super().__init__(
            request_id,
            f"Step {attempted_step} cannot be approved before step {pending_step} "
            f"on request {request_id}",
        )
        self.attempted_step = attempted_step
        self.pending_step = pending_step


class UnauthorizedActionError(WorkflowError):
    """Actor is not in the resolved actor set for the current position."""

    code = "Unauthorized"

    def __init__(self, request_id: str | None, actor_id: str, action: str, reason: str | None = None) -> None:
        msg = f"User {actor_id} may not {action} request {request_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(request_id, msg)
        self.actor_id = actor_id
        self.action = action


# ── Fatal / transient ────────────────────────────────────────────────────────


class ConfigurationError(Exception):
    """Chain, section or step data violates a structural invariant.

    Fatal: processing of the chain stops. Never caught inside the engine.

    Args:
        chain_id: Offending chain, when it already exists.
        problems: One line per violated rule.
    """

    code = "ConfigurationError"

    def __init__(self, message: str, chain_id: int | None = None, problems: list[str] | None = None) -> None:
        self.chain_id = chain_id
        self.problems = problems or []
        if self.problems:
            message = f"{message}: {'; '.join(self.problems)}"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "problems": self.problems}


class ConcurrencyConflictError(Exception):
    """Optimistic-concurrency retries exhausted for a request.

    Transient: the caller should retry the whole user action.
    """

    code = "ConcurrencyConflict"

    def __init__(self, request_id: str, attempts: int) -> None:
        self.request_id = request_id
        self.attempts = attempts
        super().__init__(
            f"Request {request_id} was modified concurrently; gave up after {attempts} attempts"
        )

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "retryable": True}
