"""completeTask / failTask: end the container task with a status."""

import logging

from taskpilot.core.interaction import ConfirmationResult
from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.types import CommandContext, CommandResult

logger = logging.getLogger(__name__)

COMPLETE_TASK_DEF = FunctionDef(
    name="completeTask",
    description="Mark the container task as successfully completed.",
    parameters=object_schema(
        {"summary": {"type": "string", "description": "A brief summary of what was accomplished."}},
        required=["summary"],
    ),
)

FAIL_TASK_DEF = FunctionDef(
    name="failTask",
    description="Mark the container task as failed.",
    parameters=object_schema(
        {"reason": {"type": "string", "description": "Explanation of why the task failed."}},
        required=["reason"],
    ),
)


def _confirm(ctx: CommandContext, prompt: str, yes_label: str) -> ConfirmationResult:
    if not ctx.config.confirm_completion:
        return ConfirmationResult(confirmed=True)
    ctx.cancel_token.raise_if_cancelled()
    confirmation = ctx.interaction.confirm_with_answer(
        prompt, yes_label, "Continue", True, ctx.options
    )
    ctx.cancel_token.raise_if_cancelled()
    if confirmation.answer:
        ctx.bus.user_message(confirmation.answer)
    return confirmation


def handle_complete_task(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    summary = call.args["summary"]
    ctx.bus.system_message("Task marked as complete by the operator.")
    ctx.bus.assistant_message(summary)

    confirmation = _confirm(ctx, "Are you sure you want to complete the task?", "Complete task")
    if confirmation.confirmed:
        content = "Task completed successfully."
    else:
        content = "Task is incomplete. Please continue."
        if confirmation.answer:
            content += f" {confirmation.answer}"

    return CommandResult(
        turns=call_turns(call, content, assistant_text="Completing the task."),
        should_break_outer=confirmation.confirmed,
        success=True if confirmation.confirmed else None,
        summary=summary if confirmation.confirmed else None,
        commands_executed_increment=0,
    )


def handle_fail_task(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    reason = call.args["reason"]
    ctx.bus.system_message("Task marked as failed by the operator.")
    ctx.bus.assistant_message(reason)

    confirmation = _confirm(ctx, "Do you want to finish the failed task?", "Finish")
    if not confirmation.confirmed:
        ctx.bus.system_message("The user decided not to finish the failed task.")
        user_text = "Let's not fail the task, continue working on it."
        if confirmation.answer:
            user_text += f" {confirmation.answer}"
        return CommandResult(
            turns=call_turns(
                call, "Task was not failed.", assistant_text="Failing the task.", user_text=user_text
            ),
            commands_executed_increment=0,
        )

    logger.info(f"Task failed: {reason}")
    return CommandResult(
        turns=call_turns(call, "Task marked as failed.", assistant_text="Failing the task."),
        should_break_outer=True,
        success=False,
        summary=reason,
        commands_executed_increment=0,
    )
