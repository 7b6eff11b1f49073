"""Command registry: name -> (definition, handler).

The registry is the command handler boundary. Unknown commands, argument
schema violations and handler exceptions all become function-response error
strings here; only cancellation propagates to the loop.
"""

import logging
from dataclasses import dataclass

from taskpilot.core.errors import ArgumentValidationError, CancellationRequested
from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, validate_call
from taskpilot.task.types import CommandContext, CommandHandler, CommandResult

logger = logging.getLogger(__name__)


@dataclass
class CommandSpec:
    definition: FunctionDef
    handler: CommandHandler


def error_result(call: FunctionCall, message: str) -> CommandResult:
    """Record a failed command as a normal call/response pair."""
    return CommandResult(turns=call_turns(call, f"Error: {message}"))


class CommandRegistry:
    """Ordered table of commands available inside a container task."""

    def __init__(self) -> None:
        self._commands: dict[str, CommandSpec] = {}

    def register(self, definition: FunctionDef, handler: CommandHandler, replace: bool = False) -> None:
        if definition.name in self._commands and not replace:
            raise ValueError(f"Command '{definition.name}' is already registered")
        self._commands[definition.name] = CommandSpec(definition=definition, handler=handler)

    def unregister(self, name: str) -> bool:
        return self._commands.pop(name, None) is not None

    def get(self, name: str) -> CommandSpec | None:
        return self._commands.get(name)

    def names(self) -> list[str]:
        return list(self._commands)

    def definitions(self) -> list[FunctionDef]:
        return [spec.definition for spec in self._commands.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._commands

    def dispatch(self, call: FunctionCall, ctx: CommandContext) -> CommandResult:
        """Validate and run one command. Never raises except on cancellation."""
        spec = self._commands.get(call.name)
        if spec is None:
            logger.warning(f"Unknown command requested: {call.name}")
            return error_result(
                call, f"Unknown command '{call.name}'. Available commands: {', '.join(self._commands)}"
            )

        try:
            validate_call(spec.definition, call)
        except ArgumentValidationError as e:
            logger.warning(str(e))
            return error_result(call, str(e))

        try:
            return spec.handler(call, ctx)
        except CancellationRequested:
            raise
        except Exception as e:
            logger.exception(f"Command '{call.name}' raised")
            ctx.bus.container_log("error", f"Command {call.name} failed", {"error": str(e)})
            return error_result(call, f"Command '{call.name}' failed: {e}")
