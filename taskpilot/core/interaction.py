"""Human interaction contract and its implementations.

Three blocking operations: confirmation with optional free-text reason,
free-text input, and secret entry. ConsoleInteraction prompts on the terminal
with rich; InteractionBridge hands requests to a UI thread and blocks the task
thread until the UI answers.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console
from rich.prompt import Confirm, Prompt

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    confirmed: bool
    answer: str | None = None


@dataclass
class InputResult:
    answer: str


class UserInteraction:
    """Blocking human-interaction contract used by handlers and loops."""

    def confirm_with_answer(
        self,
        prompt: str,
        yes_label: str = "Yes",
        no_label: str = "No",
        default: bool = True,
        options: dict[str, Any] | None = None,
    ) -> ConfirmationResult:
        raise NotImplementedError

    def ask_for_input(
        self,
        label: str,
        prompt: str,
        options: dict[str, Any] | None = None,
    ) -> InputResult:
        raise NotImplementedError

    def ask_for_secret(self, prompt: str) -> str | None:
        """Ask for a secret value. None means the user declined."""
        raise NotImplementedError


class ConsoleInteraction(UserInteraction):
    """Terminal prompts via rich."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def confirm_with_answer(
        self,
        prompt: str,
        yes_label: str = "Yes",
        no_label: str = "No",
        default: bool = True,
        options: dict[str, Any] | None = None,
    ) -> ConfirmationResult:
        self.console.print(f"\n[bold yellow]{prompt}[/bold yellow]")
        self.console.print(f"  [green]y[/green] = {yes_label}, [red]n[/red] = {no_label}")
        confirmed = Confirm.ask("Proceed?", default=default, console=self.console)
        answer = Prompt.ask(
            "Optional comment (enter to skip)", default="", console=self.console
        )
        return ConfirmationResult(confirmed=confirmed, answer=answer or None)

    def ask_for_input(
        self,
        label: str,
        prompt: str,
        options: dict[str, Any] | None = None,
    ) -> InputResult:
        self.console.print(f"\n{prompt}")
        return InputResult(answer=Prompt.ask(label, default="", console=self.console))

    def ask_for_secret(self, prompt: str) -> str | None:
        self.console.print(f"\n[bold]{prompt}[/bold]")
        value = Prompt.ask("Secret (enter to cancel)", password=True, default="", console=self.console)
        return value or None


class RequestKind(str, Enum):
    CONFIRM = "confirm"
    INPUT = "input"
    SECRET = "secret"


@dataclass
class InteractionRequest:
    """Pending question for the UI thread."""

    kind: RequestKind
    prompt: str
    label: str | None = None
    yes_label: str = "Yes"
    no_label: str = "No"
    default: bool = True
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class InteractionBridge(UserInteraction):
    """Thread-safe bridge between a task thread and a UI thread.

    USAGE (from task thread - BLOCKING):
        result = bridge.confirm_with_answer("Run container task?")

    USAGE (from UI main thread - NON-BLOCKING):
        for req in bridge.get_pending_requests():
            # Show to user, collect response
            bridge.submit_response(req.request_id, response)

    Unanswered requests time out: confirmations resolve to their default,
    input to an empty answer, and secrets to None.
    """

    def __init__(self, timeout: float = 300.0):
        self.timeout = timeout
        self._pending_requests: queue.Queue[InteractionRequest] = queue.Queue()
        self._responses: dict[str, tuple[threading.Event, Any]] = {}
        self._lock = threading.Lock()

    def _request(self, request: InteractionRequest, fallback: Any) -> Any:
        event = threading.Event()
        with self._lock:
            self._responses[request.request_id] = (event, None)

        self._pending_requests.put(request)

        if event.wait(timeout=self.timeout):
            with self._lock:
                _, response = self._responses.pop(request.request_id, (None, None))
            return fallback if response is None else response

        with self._lock:
            self._responses.pop(request.request_id, None)
        logger.warning(f"Interaction request '{request.request_id}' timed out")
        return fallback

    def confirm_with_answer(
        self,
        prompt: str,
        yes_label: str = "Yes",
        no_label: str = "No",
        default: bool = True,
        options: dict[str, Any] | None = None,
    ) -> ConfirmationResult:
        request = InteractionRequest(
            kind=RequestKind.CONFIRM,
            prompt=prompt,
            yes_label=yes_label,
            no_label=no_label,
            default=default,
        )
        return self._request(request, ConfirmationResult(confirmed=default))

    def ask_for_input(
        self,
        label: str,
        prompt: str,
        options: dict[str, Any] | None = None,
    ) -> InputResult:
        request = InteractionRequest(kind=RequestKind.INPUT, prompt=prompt, label=label)
        return self._request(request, InputResult(answer=""))

    def ask_for_secret(self, prompt: str) -> str | None:
        request = InteractionRequest(kind=RequestKind.SECRET, prompt=prompt)
        return self._request(request, None)

    def get_pending_requests(self) -> list[InteractionRequest]:
        """Get all pending requests. NON-BLOCKING.

        Called from the UI main thread.
        """
        requests = []
        while True:
            try:
                requests.append(self._pending_requests.get_nowait())
            except queue.Empty:
                break
        return requests

    def submit_response(self, request_id: str, response: Any) -> bool:
        """Answer a pending request. Returns True if it was still pending.

        Response must be a ConfirmationResult, InputResult or secret string
        matching the request kind.
        """
        with self._lock:
            if request_id not in self._responses:
                return False
            event, _ = self._responses[request_id]
            self._responses[request_id] = (event, response)
            event.set()
        return True
