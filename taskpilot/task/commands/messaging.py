"""sendMessage: inform the user, optionally waiting for a reply."""

from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.types import CommandContext, CommandResult

SEND_MESSAGE_DEF = FunctionDef(
    name="sendMessage",
    description="Send a message to the user. Set isQuestion when a reply is needed.",
    parameters=object_schema(
        {
            "message": {"type": "string", "description": "The message to send to the user."},
            "isQuestion": {
                "type": "boolean",
                "description": "Whether the message is a question, and user input is expected.",
            },
        },
        required=["message", "isQuestion"],
    ),
)


def handle_send_message(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    message = call.args["message"]
    ctx.bus.assistant_message(message)

    if not call.args.get("isQuestion"):
        return CommandResult(turns=call_turns(call, "Message delivered."), commands_executed_increment=0)

    ctx.cancel_token.raise_if_cancelled()
    response = ctx.interaction.ask_for_input("Your answer", message, ctx.options)
    ctx.cancel_token.raise_if_cancelled()
    ctx.bus.user_message(response.answer)
    return CommandResult(
        turns=call_turns(call, "Message delivered.", user_text=response.answer),
        commands_executed_increment=0,
    )
