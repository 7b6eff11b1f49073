"""Container task orchestrator.

The runContainerTask action handler. Lifecycle of one run:

    propose -> confirm -> pull -> create -> command loop -> cleanup -> report

Every stage may fail straight to cleanup. A created container is stopped and
removed exactly once, and exactly one call/response pair is reported into the
outer transcript on every exit path.
"""

import logging
import uuid

from taskpilot.core.actions import RUN_CONTAINER_TASK, ActionContext, ActionResult
from taskpilot.core.cancellation import InterruptSignal
from taskpilot.core.config import TaskPilotConfig
from taskpilot.core.errors import CancellationRequested, TaskPilotError
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import GenerateConfig, ModelTier, ResponseShape, function_calls
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
from taskpilot.core.schema import FunctionDef, object_schema, validate_call
from taskpilot.core.secrets import SecretRegistry
from taskpilot.sandbox.engine import ContainerCreateError, ImageNotAllowedError, ImagePullError
from taskpilot.task.commands import default_command_registry
from taskpilot.task.loop import CANCELLED_SUMMARY, CommandExecutionLoop
from taskpilot.task.prompting import PromptRenderer
from taskpilot.task.registry import CommandRegistry

logger = logging.getLogger(__name__)

PROPOSAL_OPTION = "task_proposal"
END_AFTER_TASK_OPTION = "end_after_task"


def run_container_task_def(allowed_images: list[str]) -> FunctionDef:
    return FunctionDef(
        name=RUN_CONTAINER_TASK,
        description="Propose a multi-step task to run inside an isolated, ephemeral container.",
        parameters=object_schema(
            {
                "image": {"type": "string", "enum": list(allowed_images)},
                "taskDescription": {"type": "string", "minLength": 1},
                "workingDir": {"type": "string", "pattern": "^/"},
            },
            required=["image", "taskDescription", "workingDir"],
        ),
    )


class ContainerTaskOrchestrator:
    """Runs container tasks around a CommandExecutionLoop.

    Services are injected once and shared by every run. `interrupt` asks the
    active run for user input at its next checkpoint.
    """

    def __init__(
        self,
        *,
        engine,
        config: TaskPilotConfig,
        secrets: SecretRegistry,
        knowledge: KnowledgeStore,
        commands: CommandRegistry | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.engine = engine
        self.config = config
        self.secrets = secrets
        self.knowledge = knowledge
        self.commands = commands or default_command_registry()
        self.renderer = renderer or PromptRenderer()
        self.interrupt = InterruptSignal()

    def __call__(self, ctx: ActionContext) -> ActionResult:
        return self.run(ctx)

    # --- Stages ---

    def _propose(self, ctx: ActionContext) -> FunctionCall:
        definition = run_container_task_def(self.config.allowed_images)
        preset = ctx.options.get(PROPOSAL_OPTION)
        if preset:
            call = FunctionCall(name=RUN_CONTAINER_TASK, id=ctx.action_call.id, args=dict(preset))
        else:
            prompt = self.renderer.render(
                "proposal.j2",
                message=ctx.action_call.args.get("message") or "Run the requested work in a container.",
                allowed_images=self.config.allowed_images,
            )
            ctx.cancel_token.raise_if_cancelled()
            parts = ctx.generate_content(
                ctx.transcript + [Turn(role=Role.USER, text=prompt)],
                GenerateConfig(
                    function_defs=[definition],
                    required_function_name=RUN_CONTAINER_TASK,
                    model_tier=ModelTier.CHEAP,
                    temperature=0.7,
                    expected_response=ResponseShape(function_call=True),
                ),
                ctx.options,
            )
            ctx.cancel_token.raise_if_cancelled()
            calls = [c for c in function_calls(parts) if c.name == RUN_CONTAINER_TASK]
            if not calls:
                raise TaskPilotError("No container task was proposed")
            call = calls[0]

        if not call.id:
            call = call.model_copy(update={"id": f"task-{uuid.uuid4().hex[:8]}"})

        image = call.args.get("image")
        if image not in self.config.allowed_images:
            raise ImageNotAllowedError(
                f"Image '{image}' is not allowed. Allowed images: {', '.join(self.config.allowed_images)}"
            )
        validate_call(definition, call)
        return call

    def _confirm(self, ctx: ActionContext, call: FunctionCall):
        args = call.args
        proposal = (
            f"Proposed container task\n"
            f"Image: {args['image']}\n"
            f"Working directory: {args['workingDir']}\n"
            f"Task: {args['taskDescription']}"
        )
        ctx.bus.assistant_message(proposal)
        ctx.wait_if_paused()
        ctx.cancel_token.raise_if_cancelled()
        confirmation = ctx.interaction.confirm_with_answer(
            "Run this container task?",
            yes_label="Run task",
            no_label="Reject",
            default=True,
            options=ctx.options,
        )
        ctx.cancel_token.raise_if_cancelled()
        return confirmation

    def _cleanup(self, session: ContainerSession, bus: ContentBus) -> None:
        bus.container_log("info", f"Cleaning up container {session.name}")
        try:
            self.engine.stop(session)
        except Exception as e:
            logger.warning(f"Failed to stop container {session.name}: {e}")
            bus.container_log("error", "Failed to stop container", {"error": str(e)})
        try:
            self.engine.remove(session)
        except Exception as e:
            logger.warning(f"Failed to remove container {session.name}: {e}")
            bus.container_log("error", "Failed to remove container", {"error": str(e)})

    def _report(self, ctx: ActionContext, call: FunctionCall, outcome: TaskOutcome) -> ActionResult:
        content = f"Task finished with status: {outcome.status.value}.\n\n**Summary:**\n{outcome.summary}"
        if outcome.wrap_up:
            content += f"\n\n**Wrap-up:**\n{outcome.wrap_up}"
        content = self.secrets.redact_text(content)

        level = "success" if outcome.status == TaskStatus.SUCCESS else "error"
        ctx.bus.container_log(level, f"Container task finished with status {outcome.status.value}")
        return ActionResult(
            items=call_turns(call, content),
            break_loop=bool(ctx.options.get(END_AFTER_TASK_OPTION)),
            step_result=outcome.model_dump(mode="json"),
        )

    # --- Run ---

    def run(self, ctx: ActionContext) -> ActionResult:
        call = FunctionCall(
            name=RUN_CONTAINER_TASK,
            id=ctx.action_call.id or f"task-{uuid.uuid4().hex[:8]}",
            args={k: v for k, v in ctx.action_call.args.items() if k != "actionType"},
        )
        session: ContainerSession | None = None

        try:
            call = self._propose(ctx)
            confirmation = self._confirm(ctx, call)
            if not confirmation.confirmed:
                reason = confirmation.answer or ""
                ctx.bus.user_message(f"Rejected container task. {reason}".strip())
                return ActionResult(
                    items=call_turns(
                        call,
                        "Container task rejected by user.",
                        user_text=f"I reject running the container task. {reason}".strip(),
                    ),
                    break_loop=bool(ctx.options.get(END_AFTER_TASK_OPTION)),
                )

            image = call.args["image"]
            ctx.bus.container_log("info", f"Pulling image {image}")
            self.engine.pull(image)
            ctx.cancel_token.raise_if_cancelled()

            session = self.engine.create(image, call.args["workingDir"])
            ctx.bus.container_log(
                "success",
                f"Container {session.name} started",
                {"id": session.id, "image": session.image},
            )
            ctx.cancel_token.raise_if_cancelled()

            loop = CommandExecutionLoop(
                session=session,
                engine=self.engine,
                config=self.config,
                registry=self.commands,
                bus=ctx.bus,
                interaction=ctx.interaction,
                secrets=self.secrets,
                knowledge=self.knowledge,
                generate_content=ctx.generate_content,
                cancel_token=ctx.cancel_token,
                wait_if_paused=ctx.wait_if_paused,
                interrupt=self.interrupt,
                options=ctx.options,
                renderer=self.renderer,
            )
            outcome = loop.run(call.args["taskDescription"])
        except CancellationRequested:
            outcome = TaskOutcome(status=TaskStatus.FAILED, summary=CANCELLED_SUMMARY, cancelled=True)
        except ImageNotAllowedError as e:
            outcome = TaskOutcome(status=TaskStatus.FAILED, summary=str(e))
        except ImagePullError as e:
            outcome = TaskOutcome(status=TaskStatus.FAILED, summary=f"Failed to pull Docker image: {e}")
        except ContainerCreateError as e:
            outcome = TaskOutcome(status=TaskStatus.FAILED, summary=f"Failed to create container: {e}")
        except Exception as e:
            logger.exception("Container task failed")
            outcome = TaskOutcome(
                status=TaskStatus.FAILED,
                summary=f"An error occurred during the container task: {e}",
            )
        finally:
            if session is not None:
                self._cleanup(session, ctx.bus)

        return self._report(ctx, call, outcome)
