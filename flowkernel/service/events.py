from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from flowkernel.logging import get_logger

logger = get_logger(__name__)

RUN_STARTED = "run.started"
RUN_PAUSED = "run.paused"
RUN_RESUMED = "run.resumed"
RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"
RUN_CANCELLED = "run.cancelled"
NODE_STARTED = "node.started"
NODE_COMPLETED = "node.completed"
NODE_FAILED = "node.failed"
NODE_SKIPPED = "node.skipped"
VARS_PATCH = "vars.patch"

TERMINAL_EVENTS = frozenset({RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED})


@dataclass
class RunEvent:
    type: str
    run_id: str
    seq: int
    ts: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, "seq": self.seq, "ts": self.ts, **self.payload}


Listener = Callable[[RunEvent], None]


class EventBus:
    """Ordered, synchronous fan-out of run events.

    Sequence numbers are per run and strictly increasing; listeners see
    events in emission order. A failing listener is logged and skipped.
    """

    def __init__(self, *, history_limit: int = 1000) -> None:
        self._lock = threading.RLock()
        self._seq: Dict[str, int] = {}
        self._listeners: Dict[Optional[str], List[Listener]] = {}
        self._history: Dict[str, Deque[RunEvent]] = {}
        self._history_limit = history_limit
        self._forget_callbacks: List[Callable[[str], None]] = []

    def emit(self, run_id: str, event_type: str, **payload: Any) -> RunEvent:
        with self._lock:
            seq = self._seq.get(run_id, 0) + 1
            self._seq[run_id] = seq
            event = RunEvent(
                type=event_type,
                run_id=run_id,
                seq=seq,
                ts=time.time() * 1000,
                payload=payload,
            )
            history = self._history.get(run_id)
            if history is None:
                history = deque(maxlen=self._history_limit)
                self._history[run_id] = history
            history.append(event)
            listeners = list(self._listeners.get(run_id, ())) + list(self._listeners.get(None, ()))
            for listener in listeners:
                try:
                    listener(event)
                except Exception as exc:
                    logger.warning(
                        "event_listener_failed",
                        run_id=run_id,
                        event_type=event_type,
                        error=str(exc),
                    )
        return event

    def subscribe(self, listener: Listener, run_id: Optional[str] = None) -> Callable[[], None]:
        """Register ``listener`` for one run, or every run when ``run_id`` is None."""
        with self._lock:
            self._listeners.setdefault(run_id, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(run_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                    if not listeners:
                        self._listeners.pop(run_id, None)

        return _unsubscribe

    def history(self, run_id: str, *, after_seq: int = 0) -> List[RunEvent]:
        with self._lock:
            return [event for event in self._history.get(run_id, ()) if event.seq > after_seq]

    def on_forget(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Call ``callback(run_id)`` whenever a run's history is dropped."""
        with self._lock:
            self._forget_callbacks.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._forget_callbacks:
                    self._forget_callbacks.remove(callback)

        return _remove

    def forget(self, run_id: str) -> None:
        with self._lock:
            self._history.pop(run_id, None)
            self._seq.pop(run_id, None)
            self._listeners.pop(run_id, None)
            callbacks = list(self._forget_callbacks)
        for callback in callbacks:
            try:
                callback(run_id)
            except Exception as exc:
                logger.warning("forget_callback_failed", run_id=run_id, error=str(exc))


__all__ = [
    "EventBus",
    "RunEvent",
    "TERMINAL_EVENTS",
    "RUN_STARTED",
    "RUN_PAUSED",
    "RUN_RESUMED",
    "RUN_COMPLETED",
    "RUN_FAILED",
    "RUN_CANCELLED",
    "NODE_STARTED",
    "NODE_COMPLETED",
    "NODE_FAILED",
    "NODE_SKIPPED",
    "VARS_PATCH",
]


