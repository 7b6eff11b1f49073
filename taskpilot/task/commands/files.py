"""viewFile / editFile: read or rewrite a text file inside the container."""

from taskpilot.core.errors import PatchApplyError
from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.sandbox.engine import SandboxError, TruncMode, truncate_output
from taskpilot.task.patch import apply_patch
from taskpilot.task.types import CommandContext, CommandResult

VIEW_FILE_DEF = FunctionDef(
    name="viewFile",
    description="Read a text file inside the container.",
    parameters=object_schema(
        {
            "reasoning": {"type": "string"},
            "filePath": {"type": "string", "minLength": 1, "description": "Absolute path in the container."},
        },
        required=["filePath"],
    ),
)

EDIT_FILE_DEF = FunctionDef(
    name="editFile",
    description=(
        "Edit a text file inside the container. Provide either the full new content "
        "or a unified diff patch, never both."
    ),
    parameters=object_schema(
        {
            "reasoning": {"type": "string", "description": "Why this file needs to be edited."},
            "filePath": {"type": "string", "minLength": 1, "description": "Absolute path in the container."},
            "newContent": {"type": "string", "description": "Full new content. Cannot be used with patch."},
            "patch": {"type": "string", "description": "Unified diff to apply. Cannot be used with newContent."},
        },
        required=["filePath"],
    ),
)


def handle_view_file(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    path = call.args["filePath"]
    ctx.bus.container_log("info", f"Viewing file {path}")
    try:
        content = ctx.engine.read_file(ctx.session, path)
    except SandboxError as e:
        return CommandResult(turns=call_turns(call, f"Failed to read {path}: {e}"))

    content, truncated = truncate_output(
        content, ctx.config.max_output_bytes, ctx.config.max_output_lines, TruncMode.START
    )
    header = f"Content of {path}" + (" (truncated)" if truncated else "")
    return CommandResult(turns=call_turns(call, f"{header}:\n{content}"))


def handle_edit_file(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    args = call.args
    path = args["filePath"]
    new_content = args.get("newContent")
    patch = args.get("patch")

    if new_content is not None and patch is not None:
        message = "Cannot provide both newContent and patch for editFile."
    elif new_content is None and patch is None:
        message = "Either newContent or patch must be provided for editFile."
    else:
        message = None
    if message:
        ctx.bus.container_log("error", message, {"filePath": path})
        return CommandResult(turns=call_turns(call, f"File edit failed: {message}"))

    ctx.bus.container_log("info", f"Editing file: {args.get('reasoning', path)}", {"filePath": path})
    try:
        if patch is not None:
            original = ctx.engine.read_file(ctx.session, path)
            final_content = apply_patch(original, patch)
        else:
            final_content = new_content
        ctx.cancel_token.raise_if_cancelled()
        ctx.engine.write_file(ctx.session, path, final_content)
    except PatchApplyError as e:
        message = (
            f"Failed to apply patch: {e}. The patch may not apply cleanly; "
            "try providing the full file content instead."
        )
        ctx.bus.container_log("error", "Patch did not apply", {"filePath": path, "error": str(e)})
        return CommandResult(turns=call_turns(call, f"File edit failed: {message}"))
    except SandboxError as e:
        ctx.bus.container_log("error", "An error occurred while editing the file", {"error": str(e)})
        return CommandResult(turns=call_turns(call, f"File edit failed: {e}"))

    result = f"File {path} edited successfully."
    ctx.bus.container_log("info", result, {"filePath": path})
    return CommandResult(turns=call_turns(call, result))
