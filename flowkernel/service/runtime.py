from __future__ import annotations

import threading

from flowkernel.config import get_settings, reset_settings_cache
from flowkernel.logging import get_logger
from flowkernel.service.builtin_handlers import register_builtin_handlers
from flowkernel.service.debugger import DebuggerController
from flowkernel.service.engine import FlowEngine
from flowkernel.service.events import EventBus
from flowkernel.service.registry import PluginRegistry
from flowkernel.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            max_concurrent_runs=self.settings.max_concurrent_runs,
        )
        self.store = MemoryStore()
        self.events = EventBus()
        self.registry = register_builtin_handlers(PluginRegistry())
        self.engine = FlowEngine(
            self.store,
            self.registry,
            events=self.events,
            settings=self.settings,
        )
        self.debugger = DebuggerController(self.engine, self.events)
        logger.info("runtime_initialized", handler_kinds=self.registry.kinds())

    async def shutdown(self) -> None:
        await self.engine.shutdown()
        self.debugger.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check keeps creation single.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.debugger.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
