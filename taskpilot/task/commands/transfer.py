"""copyToContainer / copyFromContainer: move files between host and container.

Host paths must lie inside the project root. Archives coming out of the
container are validated member by member before anything touches the host.
"""

import logging
from pathlib import Path

from filelock import FileLock, Timeout as FileLockTimeout

from taskpilot.core.errors import PathTraversalError
from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.sandbox.archive import extract_archive, is_within, list_archive, pack_path, plan_extraction
from taskpilot.sandbox.engine import SandboxError
from taskpilot.task.types import CommandContext, CommandResult

logger = logging.getLogger(__name__)

COPY_LOCK_TIMEOUT = 30
COPY_LOCK_FILENAME = ".copy_lock"

COPY_TO_CONTAINER_DEF = FunctionDef(
    name="copyToContainer",
    description=(
        "Copy a host file or directory into an existing container directory. "
        "Directory contents land directly inside containerPath."
    ),
    parameters=object_schema(
        {
            "hostPath": {"type": "string", "minLength": 1, "description": "Path inside the project root."},
            "containerPath": {"type": "string", "minLength": 1, "description": "Existing absolute directory."},
        },
        required=["hostPath", "containerPath"],
    ),
)

COPY_FROM_CONTAINER_DEF = FunctionDef(
    name="copyFromContainer",
    description=(
        "Copy a container file or directory to the host. hostPath becomes the copied "
        "file or directory itself and must be inside the project root."
    ),
    parameters=object_schema(
        {
            "containerPath": {"type": "string", "minLength": 1, "description": "Absolute path in the container."},
            "hostPath": {"type": "string", "minLength": 1, "description": "Destination inside the project root."},
        },
        required=["containerPath", "hostPath"],
    ),
)


def _resolve_host_path(ctx: CommandContext, raw: str) -> Path | None:
    """Resolve a host path against the project root, or None if it escapes."""
    root = ctx.config.project_root
    path = Path(raw)
    if not path.is_absolute():
        path = root / path
    return path.resolve() if is_within(root, path) else None


def _reject(ctx: CommandContext, call: FunctionCall, message: str) -> CommandResult:
    ctx.bus.container_log("error", message, call.args)
    ctx.bus.system_message(message)
    return CommandResult(turns=call_turns(call, f"Error: {message}"), commands_executed_increment=0)


def _confirm(ctx: CommandContext, call: FunctionCall, yes_label: str) -> tuple[bool, str | None]:
    ctx.cancel_token.raise_if_cancelled()
    confirmation = ctx.interaction.confirm_with_answer(
        "Do you want to proceed?", yes_label, "Reject", True, ctx.options
    )
    ctx.cancel_token.raise_if_cancelled()
    if confirmation.answer:
        ctx.bus.user_message(confirmation.answer)
    return confirmation.confirmed, confirmation.answer


def _declined(ctx: CommandContext, call: FunctionCall, answer: str | None) -> CommandResult:
    ctx.bus.system_message("Copy cancelled by user.")
    text = "I reject the copy operation." + (f" {answer}" if answer else "")
    return CommandResult(
        turns=call_turns(call, "Copy rejected by the user.", user_text=text),
        commands_executed_increment=0,
    )


def handle_copy_to_container(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    container_path = call.args["containerPath"]
    host_path = _resolve_host_path(ctx, call.args["hostPath"])
    if host_path is None:
        return _reject(
            ctx, call,
            f"Invalid host path: {call.args['hostPath']}. "
            f"It must be within the project root directory: {ctx.config.project_root}",
        )
    if not host_path.exists():
        return _reject(ctx, call, f"Host path does not exist: {host_path}")
    if not ctx.engine.path_exists(ctx.session, container_path):
        return _reject(ctx, call, f"Invalid container path: {container_path}. It must be an existing directory.")

    ctx.bus.assistant_message(f"Copying {host_path} into container path {container_path}")
    confirmed, answer = _confirm(ctx, call, "Copy to container")
    if not confirmed:
        return _declined(ctx, call, answer)

    try:
        ctx.engine.put_archive(ctx.session, container_path, pack_path(host_path))
    except (SandboxError, OSError) as e:
        ctx.bus.container_log("error", "Error copying to container", {"error": str(e)})
        return CommandResult(turns=call_turns(call, f"Error: {e}"), commands_executed_increment=0)

    message = f"Successfully copied {host_path} to container path {container_path}."
    ctx.bus.container_log("success", message)
    text = "I accept the copy operation." + (f" {answer}" if answer else "")
    return CommandResult(turns=call_turns(call, message, user_text=text), commands_executed_increment=0)


def handle_copy_from_container(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    container_path = call.args["containerPath"]
    root = ctx.config.project_root
    host_path = _resolve_host_path(ctx, call.args["hostPath"])
    if host_path is None:
        return _reject(
            ctx, call,
            f"Invalid host path: {call.args['hostPath']}. "
            f"It must be within the project root directory: {root}",
        )
    if not ctx.engine.path_exists(ctx.session, container_path):
        return _reject(ctx, call, f"Invalid container path: {container_path}. It must be a valid path inside the container.")

    try:
        data = ctx.engine.get_archive(ctx.session, container_path)
        entries = list_archive(data)
    except (SandboxError, OSError) as e:
        ctx.bus.container_log("error", "Error reading from container", {"error": str(e)})
        return CommandResult(turns=call_turns(call, f"Error: {e}"), commands_executed_increment=0)

    if not entries:
        message = f'No files or directories found at container path "{container_path}" to copy.'
        ctx.bus.system_message(message)
        return CommandResult(turns=call_turns(call, message), commands_executed_increment=0)

    try:
        planned = plan_extraction(data, host_path, root)
    except PathTraversalError as e:
        ctx.bus.container_log("error", "Archive rejected", {"path": e.path})
        ctx.bus.system_message(f"Copy rejected: archive entry '{e.path}' escapes {host_path}")
        return CommandResult(
            turns=call_turns(call, f"Error: copy rejected, archive entry '{e.path}' resolves outside the destination root."),
            commands_executed_increment=0,
        )

    listing = "\n".join(f"- {target.relative_to(root)}" for _, target in planned)
    ctx.bus.container_log("info", f"Found {len(entries)} entries to copy from container", {"entries": [e.name for e in entries]})
    ctx.bus.assistant_message(
        f'The following paths will be written from container path "{container_path}":\n{listing}'
    )
    confirmed, answer = _confirm(ctx, call, "Copy to host")
    if not confirmed:
        return _declined(ctx, call, answer)

    if ctx.options.get("dry_run"):
        ctx.bus.system_message("Dry run mode, not copying files from container")
        written = []
    else:
        ctx.config.state_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(ctx.config.state_dir / COPY_LOCK_FILENAME), timeout=COPY_LOCK_TIMEOUT)
        try:
            with lock:
                written = extract_archive(data, host_path, root)
        except FileLockTimeout:
            return CommandResult(
                turns=call_turns(call, f"Error: another copy holds the host lock (waited {COPY_LOCK_TIMEOUT}s)."),
                commands_executed_increment=0,
            )
        except PathTraversalError as e:
            return CommandResult(
                turns=call_turns(call, f"Error: copy rejected, archive entry '{e.path}' resolves outside the destination root."),
                commands_executed_increment=0,
            )

    message = f"Successfully copied from container path {container_path} to {host_path} ({len(written)} files)."
    ctx.bus.container_log("success", message)
    text = "I accept the copy operation." + (f" {answer}" if answer else "")
    return CommandResult(turns=call_turns(call, message, user_text=text), commands_executed_increment=0)
