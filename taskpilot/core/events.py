"""One-way observability bus.

Core code publishes system, assistant and user messages plus container logs.
Listeners are plain callables. A listener that raises is logged and skipped;
delivery never blocks or fails the publishing loop.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from taskpilot.core.secrets import SecretRegistry

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    CONTAINER_LOG = "container_log"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class BusEvent(BaseModel):
    """A single published event. Text and data are already redacted."""

    kind: EventKind
    text: str
    level: LogLevel | None = None
    data: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


Listener = Callable[[BusEvent], None]


class ContentBus:
    """Fan-out of redacted events to registered listeners.

    Keeps a bounded history so late subscribers (and tests) can inspect what
    was published.
    """

    HISTORY_SIZE = 1000

    def __init__(self, secrets: SecretRegistry | None = None):
        self._secrets = secrets or SecretRegistry()
        self._listeners: list[Listener] = []
        self._history: deque[BusEvent] = deque(maxlen=self.HISTORY_SIZE)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def history(self) -> list[BusEvent]:
        with self._lock:
            return list(self._history)

    def publish(self, kind: EventKind, text: str, level: LogLevel | None = None, data: Any = None) -> None:
        event = BusEvent(
            kind=kind,
            text=self._secrets.redact_text(text),
            level=level,
            data=self._secrets.redact_data(data) if data is not None else None,
        )
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Bus listener {listener!r} failed: {e}")

    def system_message(self, text: str) -> None:
        self.publish(EventKind.SYSTEM, text)

    def assistant_message(self, text: str) -> None:
        self.publish(EventKind.ASSISTANT, text)

    def user_message(self, text: str) -> None:
        self.publish(EventKind.USER, text)

    def container_log(self, level: LogLevel | str, text: str, data: Any = None) -> None:
        self.publish(EventKind.CONTAINER_LOG, text, level=LogLevel(level), data=data)
