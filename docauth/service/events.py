"""In-process notification bus for authentication domain events.

Publishers hand events to the bus and never deliver mail or write files
themselves. Subscribers run synchronously in registration order; a failing
subscriber is logged and does not stop the others or the publisher.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, List, Type, TypeVar

from docauth.logging import get_logger
from docauth.storage.models import RecoveryKey, UserCredential

logger = get_logger(__name__)


@dataclass(frozen=True)
class PasswordLostEvent:
    user: UserCredential
    recovery_key: RecoveryKey


E = TypeVar("E")
Handler = Callable[[object], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: object) -> int:
        """Deliver ``event`` to its subscribers and return how many succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
                continue
            delivered += 1
        if not handlers:
            logger.debug("event_unhandled", event_type=type(event).__name__)
        return delivered
