"""Secret redaction.

Process-lifetime, append-only registry of secret values revealed by the user.
Every transcript that leaves the command turn that used a secret (generation
requests, logs, bus events, summaries) passes through `redact` first.
"""

import logging
import re
import threading
from typing import Any

from taskpilot.core.models import Turn

logger = logging.getLogger(__name__)

REDACTED_MARKER = "[REDACTED]"


class SecretRegistry:
    """Append-only set of plaintext secrets.

    Thread-safe: concurrently running tasks may register and redact at the same
    time. Values are never exposed through the public API.
    """

    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self._pattern: re.Pattern[str] | None = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)

    def register(self, value: str) -> None:
        """Add a secret. Empty values are ignored."""
        if not value:
            return
        with self._lock:
            if value in self._secrets:
                return
            self._secrets.add(value)
            # Longest first so a secret containing another is replaced whole
            ordered = sorted(self._secrets, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(s) for s in ordered))
        logger.debug(f"Registered secret ({len(self._secrets)} total)")

    def clear(self) -> None:
        """Forget all secrets. Called at process teardown."""
        with self._lock:
            self._secrets.clear()
            self._pattern = None

    def redact_text(self, text: str) -> str:
        """Replace every registered secret in text with the redaction marker."""
        with self._lock:
            pattern = self._pattern
        if pattern is None or not text:
            return text
        return pattern.sub(REDACTED_MARKER, text)

    def redact_data(self, data: Any) -> Any:
        """Redact string leaves of a nested structure. Keys and scalars are kept."""
        if isinstance(data, str):
            return self.redact_text(data)
        if isinstance(data, dict):
            return {key: self.redact_data(value) for key, value in data.items()}
        if isinstance(data, (list, tuple)):
            return [self.redact_data(item) for item in data]
        return data

    def redact_turn(self, turn: Turn) -> Turn:
        """Return a copy of a turn with its text, call args and responses redacted."""
        return turn.model_copy(
            update={
                "text": self.redact_text(turn.text) if turn.text else turn.text,
                "function_calls": [
                    call.model_copy(update={"args": self.redact_data(call.args)})
                    for call in turn.function_calls
                ],
                "function_responses": [
                    response.model_copy(update={"content": self.redact_text(response.content)})
                    for response in turn.function_responses
                ],
            },
            deep=True,
        )

    def redact(self, transcript: list[Turn]) -> list[Turn]:
        """Return a redacted copy of the transcript. The input is not modified."""
        return [self.redact_turn(turn) for turn in transcript]
