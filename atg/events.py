# FILE: atg/events.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedbackRecorded:
    """Emitted by a reputation ledger after a feedback write commits."""

    subject: str
    seq: int
    signed_score: int
    weight: float
    score_after: int
    timestamp: float


Handler = Callable[[Any], None]


class EventBus:
    """
    Synchronous in-process observer registry.

    Handlers run on the emitting thread, in subscription order, after the
    emitter's state change is durable. A failing handler is logged and does
    not stop the remaining handlers or undo the write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[Type[Any], List[Handler]] = {}

    def subscribe(self, event_type: Type[Any], handler: Handler) -> Callable[[], None]:
        """Register `handler`; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: Any) -> int:
        """Deliver `event` to its subscribers; returns how many succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        ok = 0
        for handler in handlers:
            try:
                handler(event)
                ok += 1
            except Exception:
                logger.exception(
                    "event handler failed",
                    extra={"event_type": type(event).__name__},
                )
        return ok


__all__ = ["FeedbackRecorded", "EventBus"]
