"""requestSecret: collect a secret out-of-band and write it into the container.

The value is registered for redaction before anything else happens with it
and never appears in a transcript turn, a bus event or a log line.
"""

import logging

from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.sandbox.engine import SandboxError
from taskpilot.task.types import CommandContext, CommandResult

logger = logging.getLogger(__name__)

REQUEST_SECRET_DEF = FunctionDef(
    name="requestSecret",
    description=(
        "Request a secret value (e.g. an API key) from the user and write it to a file "
        "inside the container. The value is never added to the conversation."
    ),
    parameters=object_schema(
        {
            "reasoning": {"type": "string", "description": "Why the secret is needed."},
            "key": {"type": "string", "minLength": 1, "description": 'Short name, e.g. "OPENAI_API_KEY".'},
            "description": {"type": "string", "description": "Message shown to the user."},
            "destinationFilePath": {
                "type": "string",
                "minLength": 1,
                "description": "Absolute container path the secret is written to.",
            },
        },
        required=["key", "description", "destinationFilePath"],
    ),
)


def handle_request_secret(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    key = call.args["key"]
    description = call.args["description"]
    destination = call.args["destinationFilePath"]
    assistant_text = f"Requesting secret with reasoning: {call.args.get('reasoning', key)}"

    ctx.bus.container_log("info", f"Requesting secret {key}", {"key": key, "destination": destination})
    ctx.bus.assistant_message(description)

    ctx.cancel_token.raise_if_cancelled()
    value = ctx.interaction.ask_for_secret(description)
    ctx.cancel_token.raise_if_cancelled()

    if not value:
        ctx.bus.system_message("User cancelled providing the secret.")
        ctx.bus.container_log("warning", f'User did not provide secret for key "{key}".')
        return CommandResult(
            turns=call_turns(call, f'User cancelled providing secret for key "{key}".', assistant_text=assistant_text)
        )

    ctx.secrets.register(value)
    ctx.bus.system_message("Secret received. Writing to container...")
    try:
        ctx.engine.write_file(ctx.session, destination, value)
    except SandboxError as e:
        error = ctx.secrets.redact_text(str(e))
        ctx.bus.container_log("error", f'Failed to save secret for key "{key}": {error}')
        return CommandResult(
            turns=call_turns(call, f'Failed to save secret for key "{key}": {error}', assistant_text=assistant_text)
        )

    ctx.bus.container_log("success", f'Secret "{key}" saved to {destination}.')
    logger.info(f"Secret {key} written to container {ctx.session.name}")
    return CommandResult(
        turns=call_turns(
            call,
            f'Secret for key "{key}" has been provided by the user and saved to {destination}.',
            assistant_text=assistant_text,
        )
    )
