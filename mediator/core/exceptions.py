from __future__ import annotations


class MediatorError(RuntimeError):
    """Base class for failures raised by the orchestrator and its collaborators."""

    code: str = "mediator_error"
    status_code: int = 500

    def __init__(self, message: str = "", *, correlation_id: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.correlation_id = correlation_id


class PolicyError(MediatorError):
    """Raised when an API key is not authorized for the requested action."""

    code = "policy_error"
    status_code = 403


class UnknownToolError(MediatorError):
    """Raised when a tool call names no registered agent."""

    code = "unknown_tool"
    status_code = 404


class UnknownAgentError(MediatorError):
    """Raised when a policy lookup names an unregistered agent."""

    code = "unknown_agent"
    status_code = 404


class UnknownKeyError(MediatorError):
    """Raised when an administrative action names an API key that does not exist."""

    code = "unknown_key"
    status_code = 404


class DuplicateNameError(MediatorError):
    """Raised when an agent name is registered twice."""

    code = "duplicate_name"
    status_code = 409


class ToolArgumentError(MediatorError):
    """Raised when tool-call arguments fail local validation."""

    code = "invalid_arguments"
    status_code = 422


class DuplicateCorrelationError(MediatorError):
    """Raised when a turn is begun with a correlation id already in use."""

    code = "duplicate_correlation"
    status_code = 500


class AlreadySealedError(MediatorError):
    """Raised when a sealed turn record is mutated or sealed again."""

    code = "already_sealed"
    status_code = 500


class UpstreamError(MediatorError):
    """Raised when the worker model call fails; fatal to the turn."""

    code = "upstream_error"
    status_code = 502


__all__ = [
    "AlreadySealedError",
    "DuplicateCorrelationError",
    "DuplicateNameError",
    "MediatorError",
    "PolicyError",
    "ToolArgumentError",
    "UnknownAgentError",
    "UnknownKeyError",
    "UnknownToolError",
    "UpstreamError",
]
