from __future__ import annotations

from typing import Optional

from flowkernel.storage.models import ErrorInfo

# Stable error codes carried in ErrorInfo.code
HANDLER_FAILURE = "handler_failure"
HANDLER_ERROR = "handler_error"
LOOP_LIMIT_EXCEEDED = "loop_limit_exceeded"
UNKNOWN_NODE_KIND = "unknown_node_kind"
VALIDATION_ERROR = "validation_error"
TIMEOUT = "timeout"
CANCELLED = "cancelled"
CALL_DEPTH_EXCEEDED = "call_depth_exceeded"
STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
SUBFLOW_NOT_FOUND = "subflow_not_found"
PROVIDER_UNAVAILABLE = "provider_unavailable"


class ServiceError(Exception):
    """Engine error that the API layer renders as an error envelope.

    ``status_code`` picks the HTTP status and ``error_code`` is the stable
    string clients branch on; subclasses override both as class attributes.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Malformed input that is not a flow structure problem."""


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate flow/run id, or an operation the run's state does not allow."""

    status_code = 409
    error_code = "conflict"


class FlowValidationError(ValidationError):
    """A flow graph violates a structural invariant (dangling edge, cycle, no entry)."""


class UnknownNodeKind(NotFoundError):
    """No handler is registered for a primitive node kind. Never retried."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"no handler registered for node kind '{kind}'", detail={"kind": kind})
        self.kind = kind

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=UNKNOWN_NODE_KIND, message=self.message, retryable=False, data=self.detail)


class HandlerFailure(ServiceError):
    """A node (or the subflow it invoked) reported failure."""

    status_code = 500
    error_code = "server_error"

    def __init__(self, info: ErrorInfo, *, node_id: Optional[str] = None) -> None:
        super().__init__(info.message, detail={"node_id": node_id, **info.to_dict()})
        self.info = info
        self.node_id = node_id


class LoopLimitExceeded(HandlerFailure):
    """A while loop was still running when it reached its iteration bound."""

    def __init__(self, node_id: str, max_iterations: int) -> None:
        info = ErrorInfo(
            code=LOOP_LIMIT_EXCEEDED,
            message=f"while node '{node_id}' exceeded maxIterations={max_iterations}",
            retryable=False,
            data={"nodeId": node_id, "maxIterations": max_iterations},
        )
        super().__init__(info, node_id=node_id)
        self.max_iterations = max_iterations


class ExpressionEvaluationError(Exception):
    """Raised inside the expression evaluator; always resolved to ``False``."""


class DebuggerCommandError(ConflictError):
    """A debugger command is invalid for the run's current attach or execution state."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "NotFoundError",
    "ConflictError",
    "FlowValidationError",
    "UnknownNodeKind",
    "HandlerFailure",
    "LoopLimitExceeded",
    "ExpressionEvaluationError",
    "DebuggerCommandError",
]
