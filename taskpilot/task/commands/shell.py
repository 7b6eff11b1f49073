"""runCommand: execute a shell command inside the task container."""

from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.sandbox.engine import ALLOWED_SHELLS, SandboxError, TruncMode, truncate_output
from taskpilot.task.types import CommandContext, CommandResult

TIMEOUTS = {
    "10sec": 10,
    "30sec": 30,
    "1min": 60,
    "2min": 120,
    "5min": 300,
    "10min": 600,
    "15min": 900,
}

# truncMode "none" still keeps at most this many times the normal byte cap
HARD_CEILING_FACTOR = 4

RUN_COMMAND_DEF = FunctionDef(
    name="runCommand",
    description=(
        "Execute a shell command in the container, equivalent to `<shell> -c \"command\"`. "
        "Commands run non-interactively and shell state does not persist between calls. "
        "Prefer `stdin` over long command-line arguments. Some images have no bash; "
        "use /bin/sh there."
    ),
    parameters=object_schema(
        {
            "reasoning": {"type": "string", "description": "Why this command is needed."},
            "shell": {"type": "string", "enum": list(ALLOWED_SHELLS)},
            "command": {"type": "string", "minLength": 1},
            "stdin": {"type": "string", "description": "Input piped to the command."},
            "workingDir": {
                "type": "string",
                "minLength": 1,
                "description": "Existing absolute directory inside the container.",
            },
            "truncMode": {
                "type": "string",
                "enum": [m.value for m in TruncMode],
                "description": "Keep the start or the end of long output. Use none only for short output.",
            },
            "timeout": {"type": "string", "enum": list(TIMEOUTS)},
        },
        required=["shell", "command", "truncMode", "timeout"],
    ),
)


def handle_run_command(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    args = call.args
    reasoning = args.get("reasoning") or "no reasoning given"
    working_dir = args.get("workingDir") or ctx.session.working_dir
    timeout = TIMEOUTS[args["timeout"]]
    assistant_text = f"Executing command with reasoning: {reasoning}"

    ctx.bus.container_log("info", f"Executing command: {reasoning}", {"command": args["command"]})
    ctx.cancel_token.raise_if_cancelled()
    try:
        result = ctx.engine.exec(
            ctx.session,
            args["command"],
            shell=args["shell"],
            stdin=args.get("stdin"),
            working_dir=working_dir,
            timeout=timeout,
            cancel_token=ctx.cancel_token,
        )
    except SandboxError as e:
        ctx.bus.container_log("error", "An error occurred while executing the command", {"error": str(e)})
        return CommandResult(
            turns=call_turns(call, f"Command execution failed: {e}", assistant_text=assistant_text)
        )
    ctx.cancel_token.raise_if_cancelled()

    output, truncated = truncate_output(
        result.output,
        ctx.config.max_output_bytes,
        ctx.config.max_output_lines,
        TruncMode(args["truncMode"]),
        hard_max_bytes=ctx.config.max_output_bytes * HARD_CEILING_FACTOR,
    )
    if truncated:
        ctx.bus.container_log("warning", f"Command output truncated ({len(result.output)} chars)")
    ctx.bus.container_log(
        "info" if result.exit_code == 0 else "warning",
        "Command executed",
        {"command": args["command"], "exitCode": result.exit_code},
    )

    status = "Command executed."
    if result.timed_out:
        status = f"Command timed out after {args['timeout']}."
    content = f"{status}\n\nOutput:\n{output}\n\nExit Code: {result.exit_code}"
    return CommandResult(turns=call_turns(call, content, assistant_text=assistant_text))
