"""Custom exception hierarchy for the epic-autopilot orchestrator.

This module defines a structured exception hierarchy that separates fatal
start-up problems from per-phase escalations. Phase escalations carry the
item and phase that failed so the orchestrator can persist a BLOCKED record
an operator can act on.

Exception Hierarchy:
    AutopilotError (base)
    ├── ConfigurationError
    ├── ToolingMissingError
    ├── DirtyPreconditionError
    ├── GitOperationError
    ├── ExternalServiceError
    └── WorkflowError
        ├── StateSchemaError
        ├── StateInvariantError
        └── PhaseError
            ├── VerificationFailureError
            ├── ExternalTimeoutError
            ├── AgentBlockedError
            └── MergeFailureError
                └── MergeConflictError

Example Usage:
    >>> from epic_autopilot.exceptions import ExternalTimeoutError
    >>> raise ExternalTimeoutError(
    ...     "Timed out waiting for review", item_id="7A", phase="WAIT_EXTERNAL_REVIEW", iterations=60
    ... )
"""


class AutopilotError(Exception):
    """Base exception for all epic-autopilot errors.

    Attributes:
        message: Human-readable error description
        error_kind: Short machine-readable category recorded when the
            error stops the run
    """

    error_kind = "error"

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(AutopilotError):
    """Configuration file is unreadable, malformed or fails validation."""

    error_kind = "configuration"


class ToolingMissingError(AutopilotError):
    """A required external command is not available.

    Raised at start-up only. This is fatal and never retried.

    Attributes:
        tool: Name of the missing executable
    """

    error_kind = "tooling_missing"

    def __init__(self, tool: str, hint: str | None = None) -> None:
        self.tool = tool
        message = f"Required command not found: {tool}"
        if hint:
            message = f"{message}\nSuggestion: {hint}"
        super().__init__(message)


class DirtyPreconditionError(AutopilotError):
    """The checkout has uncommitted changes and no override was given."""

    error_kind = "dirty_checkout"


class GitOperationError(AutopilotError):
    """A git command failed.

    Attributes:
        command: The git arguments that failed
        stderr: Captured standard error, if any
    """

    error_kind = "git_error"

    def __init__(self, message: str, command: list[str] | None = None, stderr: str | None = None) -> None:
        self.command = command or []
        self.stderr = stderr

        full_message = message
        if stderr:
            full_message = f"{message}: {stderr.strip()}"
        super().__init__(full_message)
        self.message = message


class ExternalServiceError(AutopilotError):
    """The review or CI service could not be reached or returned an error.

    Inside polling loops this is treated as a transient "still waiting"
    answer until the iteration cap is reached.

    Attributes:
        status_code: HTTP status code (if applicable)
    """

    error_kind = "external_service"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
        super().__init__(full_message)
        self.message = message


class WorkflowError(AutopilotError):
    """Orchestration errors (state persistence, phase execution)."""

    pass


class StateSchemaError(WorkflowError):
    """The persisted state file cannot be parsed or does not match the schema."""

    error_kind = "state_schema"


class StateInvariantError(WorkflowError):
    """A state write would violate an orchestrator invariant.

    Nothing is written when this is raised.
    """

    error_kind = "state_invariant"


# =============================================================================
# Phase escalations
# =============================================================================


class PhaseError(WorkflowError):
    """Base class for failures that move the active pipeline to BLOCKED.

    Attributes:
        item_id: Work item being processed when the failure occurred
        phase: Phase that failed
        error_kind: Short machine-readable category persisted in the
            BLOCKED record
    """

    error_kind = "phase_error"

    def __init__(self, message: str, item_id: str | None = None, phase: str | None = None) -> None:
        self.item_id = item_id
        self.phase = phase

        parts = [message]
        if item_id:
            parts.append(f"item: {item_id}")
        if phase:
            parts.append(f"phase: {phase}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class VerificationFailureError(PhaseError):
    """Local checks kept failing after the allowed number of attempts."""

    error_kind = "verification_failure"

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        phase: str | None = None,
        attempts: int = 0,
    ) -> None:
        self.attempts = attempts
        super().__init__(message, item_id=item_id, phase=phase)


class ExternalTimeoutError(PhaseError):
    """A poll loop reached its iteration cap without a verdict."""

    error_kind = "external_timeout"

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        phase: str | None = None,
        iterations: int = 0,
    ) -> None:
        self.iterations = iterations
        if iterations and "iterations" not in message:
            message = f"{message} after {iterations} iterations"
        super().__init__(message, item_id=item_id, phase=phase)


class AgentBlockedError(PhaseError):
    """The development agent reported that it cannot proceed.

    Never retried: another automated attempt is unlikely to help.
    """

    error_kind = "agent_blocked"


class MergeFailureError(PhaseError):
    """Merging a review request failed."""

    error_kind = "merge_failure"


class MergeConflictError(MergeFailureError):
    """The review request cannot be merged because of conflicts."""

    error_kind = "merge_conflict"
