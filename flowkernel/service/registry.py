from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from flowkernel.logging import get_logger
from flowkernel.service.errors import (
    HANDLER_ERROR,
    UnknownNodeKind,
    ValidationError,
)
from flowkernel.storage.models import CONTROL_KINDS, ErrorInfo

logger = get_logger(__name__)


@dataclass
class HandlerResult:
    """Outcome of one handler invocation."""

    status: str
    values: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, values: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> "HandlerResult":
        merged = dict(values or {})
        merged.update(kwargs)
        return cls(status="success", values=merged)

    @classmethod
    def failure(
        cls,
        code: str | ErrorInfo,
        message: str = "handler reported failure",
        *,
        retryable: bool = True,
        data: Optional[Dict[str, Any]] = None,
    ) -> "HandlerResult":
        if isinstance(code, ErrorInfo):
            return cls(status="failure", error=code)
        return cls(
            status="failure",
            error=ErrorInfo(code=code, message=message, retryable=retryable, data=data),
        )

    @classmethod
    def coerce(cls, raw: Any) -> "HandlerResult":
        """Normalize what a handler returned into a HandlerResult.

        Accepts a HandlerResult, ``None`` (success without values), or a
        mapping shaped ``{"status": "success", "values": {...}}`` /
        ``{"status": "failure", "error": {...}}``.
        """
        if isinstance(raw, HandlerResult):
            return raw
        if raw is None:
            return cls.success()
        if isinstance(raw, Mapping):
            status = raw.get("status")
            if status == "success":
                values = raw.get("values") or {}
                if not isinstance(values, Mapping):
                    return cls.failure(HANDLER_ERROR, "handler values must be a mapping", retryable=False)
                return cls.success(values)
            if status == "failure":
                error = raw.get("error")
                if isinstance(error, ErrorInfo):
                    return cls(status="failure", error=error)
                return cls(status="failure", error=ErrorInfo.from_dict(error if isinstance(error, Mapping) else None))
        return cls.failure(
            HANDLER_ERROR,
            f"unsupported handler result of type {type(raw).__name__}",
            retryable=False,
        )


class CancellationToken:
    """Cancellation signal shared by a run and every handler it invokes."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True when the sleep was interrupted."""
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


SubexecutionFn = Callable[..., Awaitable[HandlerResult]]


@dataclass
class ExecutionContext:
    """What a handler gets besides its config and the scope."""

    run_id: str
    flow_id: str
    node_id: str
    cancel_token: CancellationToken
    attempt: int = 1
    depth: int = 0
    logger: Any = None
    _subexecute: Optional[SubexecutionFn] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    async def request_subexecution(
        self,
        flow_id: str,
        *,
        args: Optional[Mapping[str, Any]] = None,
        inline: bool = False,
    ) -> HandlerResult:
        """Run another flow as a nested frame of this run and report its outcome."""
        if self._subexecute is None:
            return HandlerResult.failure(HANDLER_ERROR, "sub-execution is not available", retryable=False)
        return await self._subexecute(flow_id, args=dict(args or {}), inline=inline)


@runtime_checkable
class NodeHandler(Protocol):
    async def execute(
        self, config: Mapping[str, Any], scope: Mapping[str, Any], context: ExecutionContext
    ) -> Any:
        ...


@dataclass
class _Registration:
    kind: str
    execute: Callable[..., Awaitable[Any]]
    handler: Any
    validator: Optional[Draft202012Validator] = None


class PluginRegistry:
    """Maps primitive node kinds to the handler that executes them."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: Dict[str, _Registration] = {}

    def register(
        self,
        kind: str,
        handler: Any,
        *,
        config_schema: Optional[dict] = None,
        replace: bool = False,
    ) -> None:
        if not kind or not isinstance(kind, str):
            raise ValidationError("node kind must be a non-empty string")
        if kind in CONTROL_KINDS:
            raise ValidationError(
                f"'{kind}' is a built-in control kind and cannot be registered",
                detail={"kind": kind},
            )
        if isinstance(handler, NodeHandler):
            execute = handler.execute
        elif callable(handler):
            execute = handler
        else:
            raise ValidationError(f"handler for '{kind}' is not callable", detail={"kind": kind})

        validator = None
        if config_schema is not None:
            try:
                Draft202012Validator.check_schema(config_schema)
            except SchemaError as exc:
                raise ValidationError(
                    f"invalid config schema for '{kind}': {exc.message}", detail={"kind": kind}
                ) from exc
            validator = Draft202012Validator(config_schema)

        with self._lock:
            if kind in self._handlers and not replace:
                raise ValidationError(
                    f"a handler is already registered for '{kind}'", detail={"kind": kind}
                )
            self._handlers[kind] = _Registration(
                kind=kind, execute=execute, handler=handler, validator=validator
            )
        logger.info("handler_registered", kind=kind, has_schema=validator is not None)

    def unregister(self, kind: str) -> bool:
        with self._lock:
            return self._handlers.pop(kind, None) is not None

    def has(self, kind: str) -> bool:
        return kind in self._handlers

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def resolve(self, kind: str) -> Callable[..., Any]:
        registration = self._handlers.get(kind)
        if registration is None:
            raise UnknownNodeKind(kind)
        return registration.execute

    async def invoke(
        self,
        kind: str,
        config: Mapping[str, Any],
        scope: Mapping[str, Any],
        context: ExecutionContext,
    ) -> HandlerResult:
        """Resolve and call the handler for ``kind``, normalizing its result.

        Synchronous handlers are tolerated; whatever they return is awaited
        when awaitable. Lookup misses raise UnknownNodeKind.
        """
        execute = self.resolve(kind)
        raw = execute(config, scope, context)
        if inspect.isawaitable(raw):
            raw = await raw
        return HandlerResult.coerce(raw)

    def validate_config(self, kind: str, config: Mapping[str, Any]) -> Optional[List[str]]:
        """Return schema violations for ``config`` or None when it conforms."""
        registration = self._handlers.get(kind)
        if registration is None or registration.validator is None:
            return None
        errors = sorted(registration.validator.iter_errors(dict(config)), key=lambda e: list(e.path))
        if errors:
            return [e.message for e in errors]
        return None


__all__ = [
    "CancellationToken",
    "ExecutionContext",
    "HandlerResult",
    "NodeHandler",
    "PluginRegistry",
]
