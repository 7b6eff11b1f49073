"""setExecutionPlan / updateExecutionPlan: maintain the task's execution plan."""

from datetime import UTC, datetime

from taskpilot.core.models import ExecutionPlan, FunctionCall, PlanStep, PlanStepState, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.types import CommandContext, CommandResult

_STATE_SCHEMA = {
    "type": "string",
    "enum": [s.value for s in PlanStepState],
    "description": "State of the step.",
}
_STATUS_SCHEMA = {"type": "string", "description": "Short progress note for the step."}

SET_EXECUTION_PLAN_DEF = FunctionDef(
    name="setExecutionPlan",
    description=(
        "Record a concise execution plan to follow in subsequent steps. Replaces any "
        "previous plan, so always send the complete, up to date plan."
    ),
    parameters=object_schema(
        {
            "plan": {
                "type": "array",
                "minItems": 1,
                "items": object_schema(
                    {
                        "id": {"type": "string", "minLength": 1},
                        "description": {"type": "string"},
                        "dependsOn": {"type": "array", "items": {"type": "string"}},
                        "state": _STATE_SCHEMA,
                        "statusUpdate": _STATUS_SCHEMA,
                    },
                    required=["id", "description", "dependsOn"],
                ),
            }
        },
        required=["plan"],
    ),
)

UPDATE_EXECUTION_PLAN_DEF = FunctionDef(
    name="updateExecutionPlan",
    description="Update progress/status of one step of the current execution plan.",
    parameters=object_schema(
        {
            "id": {"type": "string", "description": "The ID of the step to update."},
            "statusUpdate": _STATUS_SCHEMA,
            "state": _STATE_SCHEMA,
        },
        required=["id", "statusUpdate", "state"],
    ),
)


def build_steps(items: list[dict]) -> list[PlanStep]:
    """Convert plan items from call arguments into PlanSteps."""
    return [
        PlanStep(
            id=item["id"],
            description=item["description"],
            depends_on=item.get("dependsOn", []),
            state=PlanStepState(item.get("state", PlanStepState.PENDING.value)),
            status_update=item.get("statusUpdate"),
        )
        for item in items
    ]


def handle_set_execution_plan(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    steps = build_steps(call.args["plan"])
    ids = [step.id for step in steps]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        return CommandResult(
            turns=call_turns(call, f"Error: duplicate step ids in plan: {', '.join(duplicates)}"),
            commands_executed_increment=0,
        )
    unknown = sorted({dep for step in steps for dep in step.depends_on if dep not in ids})
    if unknown:
        return CommandResult(
            turns=call_turns(call, f"Error: plan depends on unknown step ids: {', '.join(unknown)}"),
            commands_executed_increment=0,
        )

    ctx.state.plan = ExecutionPlan(steps=steps)
    ctx.bus.container_log("info", "Execution plan recorded.", {"steps": len(steps)})
    return CommandResult(
        turns=call_turns(
            call,
            f"Execution plan recorded ({len(steps)} steps):\n{ctx.state.plan.render()}",
            assistant_text="Setting execution plan.",
            user_text="Please follow the execution plan carefully.",
        ),
        commands_executed_increment=0,
    )


def handle_update_execution_plan(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    step_id = call.args["id"]
    plan = ctx.state.plan
    if plan is None:
        return CommandResult(
            turns=call_turns(call, "Error: no execution plan is set. Call setExecutionPlan first."),
            commands_executed_increment=0,
        )
    step = plan.get_step(step_id)
    if step is None:
        known = ", ".join(s.id for s in plan.steps)
        return CommandResult(
            turns=call_turns(call, f"Error: unknown step id '{step_id}'. Known steps: {known}"),
            commands_executed_increment=0,
        )

    step.state = PlanStepState(call.args["state"])
    step.status_update = call.args["statusUpdate"]
    plan.updated_at = datetime.now(UTC)
    ctx.bus.container_log("info", "Execution plan updated.", call.args)
    return CommandResult(
        turns=call_turns(
            call,
            f"Step {step_id} is now {step.state.value}.",
            assistant_text=f"Updating execution plan for step {step_id}.",
        ),
        commands_executed_increment=0,
    )
