"""Exception hierarchy for litestar-orchestration.

Every exception carries a stable ``code`` so that runtime faults can be written to
an instance's ``error`` field and matched against error handler ``error_codes``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from litestar_orchestration.engine.validator import ValidationFinding

__all__ = (
    "ActivityExecutionError",
    "CompensationError",
    "ConcurrencyConflictError",
    "ExpressionError",
    "ExpressionEvaluationError",
    "ExpressionSyntaxError",
    "InvalidTransitionError",
    "NoMatchingEdgeError",
    "NoSuchBookmarkError",
    "OrchestrationError",
    "RequestValidationError",
    "SchedulingError",
    "UnknownVariableError",
    "WorkflowInstanceNotFoundError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
)


class OrchestrationError(Exception):
    """Base exception for all litestar-orchestration errors.

    All exceptions raised by the engine inherit from this class, so callers can
    catch every orchestration error with a single except clause.

    Attributes:
        code: Stable, machine readable error code.
    """

    code: str = "OrchestrationError"


class WorkflowValidationError(OrchestrationError):
    """Raised when a workflow definition fails validation at publish time.

    Attributes:
        findings: Every validation finding, warnings included.
        errors: The findings that block publishing.
    """

    code = "ValidationError"

    def __init__(self, findings: Sequence[ValidationFinding | str]) -> None:
        """Initialize the exception with validation findings.

        Args:
            findings: Validation findings, or plain messages for simple failures.
        """
        self.findings = list(findings)
        self.errors = [f for f in self.findings if isinstance(f, str) or f.is_blocking]
        messages = [f if isinstance(f, str) else f.message for f in self.errors]
        super().__init__(f"Workflow validation failed: {'; '.join(messages)}")


class RequestValidationError(OrchestrationError):
    """Raised when an inbound request fails defensive validation.

    Attributes:
        errors: Mapping of field name to the list of messages for that field.
    """

    code = "RequestValidationError"

    def __init__(self, errors: dict[str, list[str]]) -> None:
        self.errors = errors
        details = "; ".join(f"{name}: {', '.join(msgs)}" for name, msgs in errors.items())
        super().__init__(f"Invalid request: {details}")


class WorkflowNotFoundError(OrchestrationError):
    """Raised when a workflow definition is not published.

    Attributes:
        workflow_id: The workflow identifier that was requested.
        version: The specific version requested, if any.
    """

    code = "WorkflowNotFound"

    def __init__(self, workflow_id: str, version: int | None = None) -> None:
        """Initialize the exception with workflow details.

        Args:
            workflow_id: The workflow identifier that was not found.
            version: The specific version requested, if any.
        """
        self.workflow_id = workflow_id
        self.version = version
        msg = f"Workflow '{workflow_id}'"
        if version is not None:
            msg += f" version {version}"
        msg += " not found"
        super().__init__(msg)


class WorkflowInstanceNotFoundError(OrchestrationError):
    """Raised when a workflow instance does not exist in the instance store.

    Attributes:
        instance_id: The ID of the workflow instance that was not found.
    """

    code = "InstanceNotFound"

    def __init__(self, instance_id: str | UUID) -> None:
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' not found")


class NoMatchingEdgeError(OrchestrationError):
    """Raised when no outgoing edge of a node matches and no default edge exists.

    Attributes:
        node_id: The node whose outgoing edges were evaluated.
    """

    code = "NoMatchingEdge"

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"No outgoing edge of node '{node_id}' matched and no default edge exists")


class NoSuchBookmarkError(OrchestrationError):
    """Raised when a signal or resume targets a bookmark the instance does not hold.

    Attributes:
        instance_id: The targeted instance.
        bookmark_name: The bookmark that was not pending.
    """

    code = "NoSuchBookmark"

    def __init__(self, instance_id: str | UUID, bookmark_name: str) -> None:
        self.instance_id = instance_id
        self.bookmark_name = bookmark_name
        super().__init__(f"Workflow instance '{instance_id}' has no pending bookmark '{bookmark_name}'")


class ConcurrencyConflictError(OrchestrationError):
    """Raised by an instance store when the stored version moved since load.

    Attributes:
        instance_id: The instance whose save was rejected.
        expected_version: The version the caller loaded.
        actual_version: The version currently stored, when known.
    """

    code = "ConcurrencyConflict"

    def __init__(
        self,
        instance_id: str | UUID,
        expected_version: int,
        actual_version: int | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Workflow instance '{instance_id}' was modified concurrently (expected version {expected_version}"
        if actual_version is not None:
            msg += f", found {actual_version}"
        super().__init__(msg + ")")


class ExpressionError(OrchestrationError):
    """Base class for expression evaluation failures.

    Attributes:
        expression: The expression source text.
    """

    code = "ExpressionError"

    def __init__(self, expression: str, message: str) -> None:
        self.expression = expression
        super().__init__(f"{message} in expression '{expression}'")


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression cannot be parsed or uses a forbidden construct."""

    code = "ExpressionSyntaxError"


class ExpressionEvaluationError(ExpressionError):
    """Raised when a well formed expression fails at evaluation time."""

    code = "ExpressionEvaluationError"


class UnknownVariableError(ExpressionError):
    """Raised when an expression references a variable or path that does not exist.

    Attributes:
        variable: The dotted path that could not be resolved.
    """

    code = "UnknownVariable"

    def __init__(self, expression: str, variable: str) -> None:
        self.variable = variable
        super().__init__(expression, f"Unknown variable '{variable}'")


class ActivityExecutionError(OrchestrationError):
    """Raised by, or on behalf of, an activity executor that failed.

    Executors may raise this with a specific ``error_code`` so that error handlers
    can match on it. Any other exception escaping an executor is wrapped in one.

    Attributes:
        error_code: Code matched against error handler ``error_codes``.
        activity_id: The node that failed, when known.
        cause: The underlying exception, if any.
    """

    code = "ActivityExecutionError"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        activity_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.error_code = error_code or self.code
        self.activity_id = activity_id
        self.cause = cause
        super().__init__(message)


class CompensationError(OrchestrationError):
    """Raised when a compensation handler fails. Compensation failures are terminal.

    Attributes:
        activity_id: The node whose compensation failed.
        cause: The underlying exception.
    """

    code = "CompensationError"

    def __init__(self, activity_id: str, cause: BaseException | None = None) -> None:
        self.activity_id = activity_id
        self.cause = cause
        msg = f"Compensation of activity '{activity_id}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class InvalidTransitionError(OrchestrationError):
    """Raised when a lifecycle operation is not legal in the instance's current status.

    Attributes:
        instance_id: The ID of the workflow instance.
        status: The instance's current status.
        operation: The operation that was attempted.
    """

    code = "InvalidTransition"

    def __init__(
        self,
        instance_id: str | UUID,
        status: str,
        operation: str,
        reason: str | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.status = status
        self.operation = operation
        msg = f"Cannot {operation} workflow instance '{instance_id}' while it is {status}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SchedulingError(OrchestrationError):
    """Raised when the scheduler cannot complete a step, e.g. repeated save conflicts.

    This is a transient scheduling failure, never an instance fault.

    Attributes:
        instance_id: The instance whose step could not be completed.
    """

    code = "SchedulingError"

    def __init__(self, instance_id: str | UUID, reason: str, **context: Any) -> None:
        self.instance_id = instance_id
        self.context = context
        super().__init__(f"Scheduling of workflow instance '{instance_id}' failed: {reason}")
