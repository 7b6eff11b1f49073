"""Command execution loop.

Each turn asks the generation service for exactly one command call, dispatches
it through the command registry and records the result. The loop alone counts
commands (one per completed turn) and enforces the cap. After every turn the
context metrics are recomputed; when a ceiling is exceeded the next turn is
restricted to wrapContext.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

from taskpilot.core.cancellation import CancellationToken, InterruptSignal
from taskpilot.core.config import TaskPilotConfig
from taskpilot.core.context import WRAP_CONTEXT, compute_context_metrics
from taskpilot.core.errors import CancellationRequested
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import (
    GenerateConfig,
    GenerateContentFn,
    ModelTier,
    Part,
    ResponseShape,
    function_calls,
    joined_text,
)
from taskpilot.core.interaction import UserInteraction
from taskpilot.core.knowledge import KnowledgeStore
from taskpilot.core.models import (
    ContainerSession,
    FunctionCall,
    Role,
    TaskOutcome,
    TaskStatus,
    Turn,
    call_turns,
)
from taskpilot.core.secrets import SecretRegistry
from taskpilot.task.commands.knowledge import format_entries
from taskpilot.task.prompting import PromptRenderer
from taskpilot.task.registry import CommandRegistry, error_result
from taskpilot.task.types import CommandContext, CommandResult, TaskState

logger = logging.getLogger(__name__)

CANCELLED_SUMMARY = "Task cancelled by user"
COMMAND_LIMIT_WARNING = 10
SUMMARY_MAX_CHARS = 1000
COMMAND_TEMPERATURE = 0.7


def select_model_tier(transcript_length: int) -> ModelTier:
    """Stronger models while the task is being set up, cheaper ones later."""
    if transcript_length <= 2:
        return ModelTier.DEFAULT
    if transcript_length <= 5:
        return ModelTier.CHEAP
    return ModelTier.LITE


class CommandExecutionLoop:
    """Drive one container task to completion, failure, the command cap or cancellation."""

    def __init__(
        self,
        *,
        session: ContainerSession,
        engine: Any,
        config: TaskPilotConfig,
        registry: CommandRegistry,
        bus: ContentBus,
        interaction: UserInteraction,
        secrets: SecretRegistry,
        knowledge: KnowledgeStore,
        generate_content: GenerateContentFn,
        cancel_token: CancellationToken,
        wait_if_paused: Callable[[], None] | None = None,
        interrupt: InterruptSignal | None = None,
        options: dict[str, Any] | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.session = session
        self.engine = engine
        self.config = config
        self.registry = registry
        self.bus = bus
        self.interaction = interaction
        self.secrets = secrets
        self.knowledge = knowledge
        self.cancel_token = cancel_token
        self.wait_if_paused = wait_if_paused or (lambda: None)
        self.interrupt = interrupt
        self.options = options or {}
        self.renderer = renderer or PromptRenderer()
        self._raw_generate = generate_content
        self.state: TaskState | None = None

    def generate(self, transcript: list[Turn], config: GenerateConfig, options: dict[str, Any]) -> list[Part]:
        """Call the generation service with every registered secret redacted."""
        return self._raw_generate(self.secrets.redact(transcript), config, options)

    # --- Prompt construction ---

    def _prefix(self, state: TaskState) -> list[Turn]:
        system = self.renderer.render(
            "operator_system.j2",
            image=self.session.image,
            project_root=str(self.config.project_root),
            definitions=self.registry.definitions(),
            max_commands=self.config.max_commands,
        )
        task = self.renderer.render(
            "task.j2",
            task_description=state.task_description,
            working_dir=self.session.working_dir,
        )
        return [Turn(role=Role.SYSTEM, text=system), Turn(role=Role.USER, text=task)]

    def _turn_config(self, state: TaskState, force_wrap: bool) -> GenerateConfig:
        if force_wrap:
            wrap = self.registry.get(WRAP_CONTEXT)
            return GenerateConfig(
                function_defs=[wrap.definition] if wrap else [],
                required_function_name=WRAP_CONTEXT,
                model_tier=ModelTier.CHEAP,
                temperature=COMMAND_TEMPERATURE,
                expected_response=ResponseShape(function_call=True),
            )
        return GenerateConfig(
            function_defs=self.registry.definitions(),
            model_tier=select_model_tier(len(state.transcript)),
            temperature=COMMAND_TEMPERATURE,
            expected_response=ResponseShape(function_call=True),
        )

    def _context(self, state: TaskState) -> CommandContext:
        return CommandContext(
            session=self.session,
            engine=self.engine,
            config=self.config,
            state=state,
            bus=self.bus,
            interaction=self.interaction,
            secrets=self.secrets,
            knowledge=self.knowledge,
            generate_content=self.generate,
            cancel_token=self.cancel_token,
            options=self.options,
        )

    # --- Checkpoint helpers ---

    def _checkpoint(self) -> None:
        """Honor pause and cancellation between suspending calls."""
        self.cancel_token.raise_if_cancelled()
        self.wait_if_paused()
        self.cancel_token.raise_if_cancelled()

    def _prequery_knowledge(self, state: TaskState) -> None:
        entries = self.knowledge.query_knowledge(state.task_description)
        if not entries:
            return
        call = FunctionCall(
            name="queryKnowledge",
            id="auto-query-knowledge",
            args={"query": state.task_description, "explanation": "Knowledge from earlier tasks"},
        )
        content = f"Found {len(entries)} relevant knowledge entries:\n{format_entries(entries)}"
        state.transcript.extend(call_turns(call, content))
        self.bus.container_log("info", f"Found {len(entries)} relevant knowledge entries before starting")

    def _handle_interrupt(self, state: TaskState) -> None:
        if self.interrupt is None or not self.interrupt.consume():
            return
        self.bus.system_message("Task interrupted, waiting for user input")
        self.bus.assistant_message("What would you like to do?")
        response = self.interaction.ask_for_input("Your answer", "What would you like to do?", self.options)
        self.cancel_token.raise_if_cancelled()
        self.bus.user_message(response.answer)
        state.transcript.append(Turn(role=Role.USER, text=response.answer))

    def _apply(self, state: TaskState, result: CommandResult) -> None:
        if result.replace_transcript is not None:
            state.transcript = list(result.replace_transcript)
        else:
            state.transcript.extend(result.turns)

    # --- Main loop ---

    def run(self, task_description: str) -> TaskOutcome:
        state = TaskState(task_description=task_description)
        self.state = state
        prefix = self._prefix(state)
        ctx = self._context(state)

        success = False
        summary: str | None = None
        force_wrap = False
        max_commands = self.config.max_commands

        try:
            self._prequery_knowledge(state)
            while True:
                self._checkpoint()
                self._handle_interrupt(state)

                if max_commands - state.commands_executed == COMMAND_LIMIT_WARNING and max_commands > COMMAND_LIMIT_WARNING:
                    state.transcript.append(
                        Turn(
                            role=Role.USER,
                            text=(
                                f"[context] nearing command limit of {max_commands}! "
                                f"{COMMAND_LIMIT_WARNING} commands remaining! Start finishing up."
                            ),
                        )
                    )

                parts = self.generate(prefix + state.transcript, self._turn_config(state, force_wrap), self.options)
                self._checkpoint()

                reasoning = joined_text(parts)
                if reasoning:
                    self.bus.assistant_message(reasoning)
                result = self._dispatch_one(state, ctx, function_calls(parts), force_wrap)
                self._apply(state, result)
                if result.success is not None:
                    success = result.success
                if result.summary is not None:
                    summary = result.summary

                state.commands_executed += 1
                metrics = compute_context_metrics(state.transcript)
                force_wrap = self.config.context_budget.exceeded(metrics)
                if force_wrap:
                    self.bus.container_log(
                        "warning",
                        "Context budget exceeded, next command must be wrapContext",
                        metrics.model_dump(),
                    )

                if result.should_break_outer:
                    break
                if state.commands_executed >= max_commands:
                    success = False
                    summary = f"Task incomplete: reached maximum command limit ({max_commands})"
                    self.bus.system_message(summary)
                    break
        except CancellationRequested:
            self.bus.container_log("warning", "Task cancelled by user. Exiting command loop.")
            return TaskOutcome(
                status=TaskStatus.FAILED,
                summary=CANCELLED_SUMMARY,
                commands_executed=state.commands_executed,
                cancelled=True,
            )

        wrap_up = self._wrap_up(prefix, state, summary)
        if not summary:
            summary = "Task completed" if success else "Task failed or incomplete"
        return TaskOutcome(
            status=TaskStatus.SUCCESS if success else TaskStatus.FAILED,
            summary=summary,
            wrap_up=wrap_up,
            commands_executed=state.commands_executed,
        )

    def _dispatch_one(
        self,
        state: TaskState,
        ctx: CommandContext,
        calls: list[FunctionCall],
        force_wrap: bool,
    ) -> CommandResult:
        """Dispatch the first call of a response. Extra calls are dropped."""
        if not calls:
            self.bus.container_log("error", "The model failed to produce a command call.")
            return CommandResult(
                turns=[
                    Turn(role=Role.ASSISTANT, text="I could not determine a valid action to take."),
                    Turn(role=Role.USER, text="Please try again."),
                ]
            )

        if len(calls) > 1:
            logger.warning(f"Model returned {len(calls)} calls; only '{calls[0].name}' is executed")
        call = calls[0]
        if not call.id:
            call = call.model_copy(update={"id": f"call-{uuid.uuid4().hex[:8]}"})

        if force_wrap and call.name != WRAP_CONTEXT:
            return error_result(
                call,
                "Context budget exceeded. You must call wrapContext before any other command.",
            )
        return self.registry.dispatch(call, ctx)

    def _wrap_up(self, prefix: list[Turn], state: TaskState, reason: str | None) -> str | None:
        """Ask for a short final summary. Best effort: failures are logged, not raised."""
        request = Turn(
            role=Role.USER,
            text=self.renderer.render("final_summary.j2", reason=reason),
        )
        try:
            parts = self.generate(
                prefix + state.transcript + [request],
                GenerateConfig(
                    model_tier=ModelTier.LITE,
                    temperature=COMMAND_TEMPERATURE,
                    expected_response=ResponseShape(text=True),
                ),
                self.options,
            )
        except Exception as e:
            logger.warning(f"Final summary request failed: {e}")
            self.bus.container_log("error", "Error during post-loop wrap-up", {"error": str(e)})
            return None

        text = joined_text(parts)
        if not text:
            return None
        if len(text) > SUMMARY_MAX_CHARS:
            text = text[:SUMMARY_MAX_CHARS] + "..."
        text = self.secrets.redact_text(text)
        self.bus.container_log("info", "Final wrap-up summary from the model", {"text": text})
        return text
