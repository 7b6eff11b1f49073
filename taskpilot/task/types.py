"""Shared types for the container task command loop."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from taskpilot.core.cancellation import CancellationToken
from taskpilot.core.config import TaskPilotConfig
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import GenerateContentFn
from taskpilot.core.interaction import UserInteraction
from taskpilot.core.knowledge import KnowledgeStore
from taskpilot.core.models import ContainerSession, ExecutionPlan, FunctionCall, Turn
from taskpilot.core.secrets import SecretRegistry


@dataclass
class TaskState:
    """Mutable state of one container task, owned by its command loop."""

    task_description: str
    transcript: list[Turn] = field(default_factory=list)
    plan: ExecutionPlan | None = None
    commands_executed: int = 0


@dataclass
class CommandContext:
    """Everything a command handler may use. Handlers must not mutate the transcript."""

    session: ContainerSession
    engine: Any
    config: TaskPilotConfig
    state: TaskState
    bus: ContentBus
    interaction: UserInteraction
    secrets: SecretRegistry
    knowledge: KnowledgeStore
    generate_content: GenerateContentFn
    cancel_token: CancellationToken
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class CommandResult:
    """Outcome of one command.

    `turns` are appended to the transcript. `replace_transcript`, when set,
    replaces it wholesale instead (compaction). `commands_executed_increment`
    is advisory; the loop counts every completed turn as one command.
    """

    turns: list[Turn] = field(default_factory=list)
    replace_transcript: list[Turn] | None = None
    should_break_outer: bool = False
    success: bool | None = None
    summary: str | None = None
    commands_executed_increment: int = 1


CommandHandler = Callable[[FunctionCall, CommandContext], CommandResult]
