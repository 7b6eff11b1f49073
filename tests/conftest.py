# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the TaskPilot test suite.

This module provides stand-ins for every external collaborator:
- A scripted generation service recording each request
- A fake container engine with an in-memory filesystem
- A scripted human-interaction implementation
- Temporary project roots, knowledge stores and redacting buses

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from taskpilot.core.cancellation import CancellationToken
from taskpilot.core.config import TaskPilotConfig
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import GenerateConfig, Part
from taskpilot.core.interaction import ConfirmationResult, InputResult, UserInteraction
from taskpilot.core.knowledge import KnowledgeStore
from taskpilot.core.models import ContainerSession, ContainerStatus, FunctionCall, Turn
from taskpilot.core.secrets import SecretRegistry
from taskpilot.sandbox.engine import ContainerExecError, ExecResult
from taskpilot.task.types import CommandContext, TaskState


# =============================================================================
# Generation Service
# =============================================================================


class ScriptedGenerator:
    """Generation service replaying scripted responses.

    Requests expecting text (final summaries, free-form messages) are answered
    with `text` and do not consume the script. Every other request pops the
    next scripted entry: a list of parts, an exception to raise, or a callable
    taking (transcript, config) and returning parts.
    """

    def __init__(self, script: list[Any] | None = None, text: str = "All done."):
        self.script = list(script or [])
        self.text = text
        self.requests: list[tuple[list[Turn], GenerateConfig, dict[str, Any]]] = []

    def __call__(self, transcript: list[Turn], config: GenerateConfig, options: dict[str, Any]) -> list[Part]:
        self.requests.append((transcript, config, options))
        if config.expected_response.text:
            return [Part.of_text(self.text)] if self.text is not None else []
        if not self.script:
            raise RuntimeError("Generation script exhausted")
        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(transcript, config)
        return entry

    def push(self, *entries: Any) -> None:
        self.script.extend(entries)

    @property
    def configs(self) -> list[GenerateConfig]:
        return [config for _, config, _ in self.requests]


def call_part(name: str, call_id: str | None = None, **args: Any) -> list[Part]:
    """A scripted response holding a single function call."""
    return [Part.of_call(name, args, id=call_id or f"{name}-id")]


# =============================================================================
# Container Engine
# =============================================================================


class FakeEngine:
    """In-memory container engine recording every lifecycle call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.files: dict[str, str] = {}
        self.dirs: set[str] = {"/", "/workspace", "/tmp"}
        self.archives: dict[str, bytes] = {}
        self.put_archives: list[tuple[str, bytes]] = []
        self.outputs: dict[str, ExecResult] = {}
        self.pull_error: Exception | None = None
        self.create_error: Exception | None = None
        self.exec_error: Exception | None = None
        self.stop_error: Exception | None = None

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def pull(self, image: str) -> None:
        self.calls.append(("pull", (image,)))
        if self.pull_error:
            raise self.pull_error

    def create(self, image: str, working_dir: str, task_id: str | None = None) -> ContainerSession:
        self.calls.append(("create", (image, working_dir)))
        if self.create_error:
            raise self.create_error
        return ContainerSession(
            id="c0ffee",
            name="taskpilot-task-test",
            image=image,
            working_dir=working_dir,
            status=ContainerStatus.RUNNING,
        )

    def stop(self, session: ContainerSession) -> None:
        self.calls.append(("stop", (session.id,)))
        if self.stop_error:
            raise self.stop_error
        session.status = ContainerStatus.STOPPED

    def remove(self, session: ContainerSession) -> None:
        self.calls.append(("remove", (session.id,)))
        session.status = ContainerStatus.REMOVED

    def exec(self, session: ContainerSession, command: str, **kwargs: Any) -> ExecResult:
        self.calls.append(("exec", (command, kwargs)))
        if self.exec_error:
            raise self.exec_error
        return self.outputs.get(command, ExecResult(exit_code=0, output=""))

    def path_exists(self, session: ContainerSession, path: str) -> bool:
        return path in self.files or path in self.dirs or path in self.archives

    def read_file(self, session: ContainerSession, path: str) -> str:
        self.calls.append(("read_file", (path,)))
        if path not in self.files:
            raise ContainerExecError(f"cat: {path}: No such file or directory")
        return self.files[path]

    def write_file(self, session: ContainerSession, path: str, content: str) -> None:
        self.calls.append(("write_file", (path,)))
        self.files[path] = content

    def put_archive(self, session: ContainerSession, container_dir: str, data: bytes) -> None:
        self.calls.append(("put_archive", (container_dir,)))
        self.put_archives.append((container_dir, data))

    def get_archive(self, session: ContainerSession, container_path: str) -> bytes:
        self.calls.append(("get_archive", (container_path,)))
        return self.archives[container_path]


def make_tar(members: dict[str, bytes | None], links: dict[str, str] | None = None) -> bytes:
    """Build a tar stream. A None payload makes a directory member."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, payload in members.items():
            info = tarfile.TarInfo(name)
            if payload is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.size = len(payload)
                tar.addfile(info, io.BytesIO(payload))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return buffer.getvalue()


# =============================================================================
# Human Interaction
# =============================================================================


class ScriptedInteraction(UserInteraction):
    """Answers prompts from queues. Defaults: confirm, empty input, no secret."""

    def __init__(
        self,
        confirmations: list[ConfirmationResult] | None = None,
        inputs: list[str] | None = None,
        secrets: list[str | None] | None = None,
    ):
        self.confirmations = list(confirmations or [])
        self.inputs = list(inputs or [])
        self.secrets = list(secrets or [])
        self.prompts: list[tuple[str, str]] = []

    def confirm_with_answer(self, prompt, yes_label="Yes", no_label="No", default=True, options=None):
        self.prompts.append(("confirm", prompt))
        if self.confirmations:
            return self.confirmations.pop(0)
        return ConfirmationResult(confirmed=True)

    def ask_for_input(self, label, prompt, options=None):
        self.prompts.append(("input", prompt))
        return InputResult(answer=self.inputs.pop(0) if self.inputs else "")

    def ask_for_secret(self, prompt):
        self.prompts.append(("secret", prompt))
        return self.secrets.pop(0) if self.secrets else None


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Create an empty project directory inside tmp_path."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def config(project_root: Path) -> TaskPilotConfig:
    """Default configuration rooted at the temporary project."""
    return TaskPilotConfig(project_root=project_root)


@pytest.fixture
def secrets() -> SecretRegistry:
    return SecretRegistry()


@pytest.fixture
def bus(secrets: SecretRegistry) -> ContentBus:
    """Redacting bus sharing the test's secret registry."""
    return ContentBus(secrets)


@pytest.fixture
def knowledge(tmp_path: Path) -> KnowledgeStore:
    """Knowledge store backed by a temporary SQLite file."""
    store = KnowledgeStore(tmp_path / "state" / "knowledge.db")
    yield store
    store.close()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def interaction() -> ScriptedInteraction:
    return ScriptedInteraction()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def session() -> ContainerSession:
    """A running container session as returned by FakeEngine.create."""
    return ContainerSession(
        id="c0ffee",
        name="taskpilot-task-test",
        image="alpine:latest",
        working_dir="/workspace",
        status=ContainerStatus.RUNNING,
    )


@pytest.fixture
def make_context(
    session, engine, config, bus, interaction, secrets, knowledge, generator, cancel_token
) -> Callable[..., CommandContext]:
    """Factory for CommandContext with the shared fakes.

    Example:
        def test_handler(make_context):
            ctx = make_context(options={"dry_run": True})
    """

    def factory(state: TaskState | None = None, options: dict[str, Any] | None = None) -> CommandContext:
        return CommandContext(
            session=session,
            engine=engine,
            config=config,
            state=state or TaskState(task_description="test task"),
            bus=bus,
            interaction=interaction,
            secrets=secrets,
            knowledge=knowledge,
            generate_content=generator,
            cancel_token=cancel_token,
            options=options or {},
        )

    return factory


def make_call(name: str, call_id: str = "call-1", **args: Any) -> FunctionCall:
    return FunctionCall(name=name, id=call_id, args=args)


def response_content(turns: list[Turn]) -> str:
    """Content of the function response recorded in a call/response pair."""
    return turns[-1].function_responses[0].content


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "docker: marks tests requiring Docker")
