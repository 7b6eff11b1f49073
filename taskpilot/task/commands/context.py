"""wrapContext / checkContext: keep the task transcript within budget."""

from taskpilot.core.context import WRAP_CONTEXT, compact_transcript, compute_context_metrics
from taskpilot.core.models import ExecutionPlan, FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.commands.planning import SET_EXECUTION_PLAN_DEF, build_steps
from taskpilot.task.types import CommandContext, CommandResult

WRAP_CONTEXT_DEF = FunctionDef(
    name=WRAP_CONTEXT,
    description=(
        "Replace the conversation history with a compact summary. Call it when checkContext "
        "reports the limits are near; it is forced once they are exceeded."
    ),
    parameters=object_schema(
        {
            "summary": {"type": "string", "description": "Prior steps and findings worth keeping."},
            "plan": SET_EXECUTION_PLAN_DEF.parameters["properties"]["plan"],
            "progress": {"type": "string", "description": "What is done and what remains."},
            "importantFiles": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Container paths that matter for the next steps.",
            },
            "nextStep": {"type": "string", "description": "The very next thing to do."},
        },
        required=["summary", "progress", "nextStep"],
    ),
)

CHECK_CONTEXT_DEF = FunctionDef(
    name="checkContext",
    description="Report context metrics (message and token counts) and whether to wrap context.",
    parameters=object_schema({}),
)


def handle_wrap_context(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    budget = ctx.config.context_budget
    before = compute_context_metrics(ctx.state.transcript)
    compacted, after = compact_transcript(ctx.state.transcript, call, budget)

    plan = call.args.get("plan")
    if isinstance(plan, list) and plan:
        ctx.state.plan = ExecutionPlan(steps=build_steps(plan))

    ctx.bus.container_log(
        "info",
        "Context wrapped.",
        {
            "before": before.model_dump(),
            "after": after.model_dump(),
        },
    )
    return CommandResult(replace_transcript=compacted, commands_executed_increment=0)


def handle_check_context(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    budget = ctx.config.context_budget
    metrics = compute_context_metrics(ctx.state.transcript)
    content = (
        f"Context metrics: messages={metrics.message_count}, "
        f"tokens~{metrics.estimated_tokens}."
    )
    if budget.exceeded(metrics):
        content += (
            f" Limits exceeded: messages>{budget.max_messages} or "
            f"tokens>{budget.max_tokens}. You must call wrapContext now."
        )
    elif budget.nearing(metrics):
        content += " Nearing limits. Consider calling wrapContext soon."
    else:
        content += " Context is within limits."
    return CommandResult(turns=call_turns(call, content), commands_executed_increment=0)
