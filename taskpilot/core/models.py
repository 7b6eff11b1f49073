"""Data models for transcripts, container sessions and task state.

Uses Pydantic so transcripts can be serialized for redaction and logging.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Author of a transcript turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FunctionCall(BaseModel):
    """A single action or command selected by the generation service."""

    name: str
    id: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)


class FunctionResponse(BaseModel):
    """Response to a FunctionCall, keyed by the call id."""

    name: str
    call_id: str | None = None
    content: str = ""


class Turn(BaseModel):
    """One entry of a transcript."""

    role: Role
    text: str | None = None
    function_calls: list[FunctionCall] = Field(default_factory=list)
    function_responses: list[FunctionResponse] = Field(default_factory=list)
    cache: bool = False


# Ordered turn history of a task
Transcript = list[Turn]


def call_turns(
    call: FunctionCall,
    content: str,
    *,
    assistant_text: str | None = None,
    user_text: str | None = None,
) -> list[Turn]:
    """Build the assistant-call / user-response pair recording one function call."""
    return [
        Turn(role=Role.ASSISTANT, text=assistant_text, function_calls=[call]),
        Turn(
            role=Role.USER,
            text=user_text,
            function_responses=[
                FunctionResponse(name=call.name, call_id=call.id, content=content)
            ],
        ),
    ]


# --- Container Session ---


class ContainerStatus(str, Enum):
    """Lifecycle state of a container session."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class ContainerSession(BaseModel):
    """Ephemeral sandbox backing one container task."""

    id: str
    name: str
    image: str
    working_dir: str
    status: ContainerStatus = ContainerStatus.CREATED
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# --- Execution Plan ---


class PlanStepState(str, Enum):
    """State of one execution plan step."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStep(BaseModel):
    """A single step of an execution plan."""

    id: str
    description: str
    depends_on: list[str] = Field(default_factory=list)
    state: PlanStepState = PlanStepState.PENDING
    status_update: str | None = None


class ExecutionPlan(BaseModel):
    """Plan/progress state maintained by the plan commands for one container task."""

    steps: list[PlanStep] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def get_step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def render(self) -> str:
        """Render the plan as a checklist."""
        marks = {
            PlanStepState.PENDING: " ",
            PlanStepState.IN_PROGRESS: "~",
            PlanStepState.COMPLETED: "x",
            PlanStepState.FAILED: "!",
            PlanStepState.SKIPPED: "-",
        }
        lines = []
        for step in self.steps:
            line = f"[{marks[step.state]}] {step.id}: {step.description}"
            if step.depends_on:
                line += f" (after {', '.join(step.depends_on)})"
            if step.status_update:
                line += f" - {step.status_update}"
            lines.append(line)
        return "\n".join(lines)


# --- Context & Outcome ---


class ContextMetrics(BaseModel):
    """Size of a transcript. Derived every turn, never persisted."""

    message_count: int
    estimated_tokens: int


class TaskStatus(str, Enum):
    """Final status of a container task."""

    SUCCESS = "Success"
    FAILED = "Failed"


class TaskOutcome(BaseModel):
    """Result of one command execution loop run."""

    status: TaskStatus
    summary: str
    wrap_up: str | None = None
    commands_executed: int = 0
    cancelled: bool = False


class KnowledgeEntry(BaseModel):
    """A namespaced entry of the knowledge store."""

    key: str
    value: Any
    tags: list[str] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
