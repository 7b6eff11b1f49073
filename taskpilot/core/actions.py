"""Outer action handlers.

An action handler takes an ActionContext and returns an ActionResult. Handlers
are resolved by action type: plugin registrations first, built-ins second,
and sendMessage as the fallback for anything unknown.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from taskpilot.core.cancellation import CancellationToken
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import (
    GenerateConfig,
    GenerateContentFn,
    GenerateImageFn,
    ModelTier,
    ResponseShape,
    joined_text,
)
from taskpilot.core.interaction import UserInteraction
from taskpilot.core.models import FunctionCall, Role, Turn

logger = logging.getLogger(__name__)

SEND_MESSAGE = "sendMessage"
END_CONVERSATION = "endConversation"
RUN_CONTAINER_TASK = "runContainerTask"


@dataclass
class ActionContext:
    """Inputs of one action handler invocation."""

    action_call: FunctionCall
    transcript: list[Turn]
    options: dict[str, Any]
    generate_content: GenerateContentFn
    generate_image: GenerateImageFn
    wait_if_paused: Callable[[], None]
    cancel_token: CancellationToken
    bus: ContentBus
    interaction: UserInteraction

    @property
    def action_type(self) -> str:
        return self.action_call.args.get("actionType", SEND_MESSAGE)


@dataclass
class ActionResult:
    """Turns to append to the outer transcript and whether to stop."""

    items: list[Turn] = field(default_factory=list)
    break_loop: bool = False
    step_result: dict[str, Any] | None = None


ActionHandler = Callable[[ActionContext], ActionResult]


class ActionHandlerRegistry:
    """Two ordered tables: plugin handlers override built-ins."""

    def __init__(self) -> None:
        self._builtins: dict[str, ActionHandler] = {}
        self._plugins: dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler, plugin: bool = False) -> None:
        table = self._plugins if plugin else self._builtins
        if action_type in table:
            logger.warning(f"Replacing {'plugin' if plugin else 'built-in'} handler for {action_type}")
        table[action_type] = handler

    def resolve(self, action_type: str | None) -> ActionHandler:
        if action_type in self._plugins:
            return self._plugins[action_type]
        if action_type in self._builtins:
            return self._builtins[action_type]
        logger.info(f"No handler for action '{action_type}', falling back to {SEND_MESSAGE}")
        return self._builtins[SEND_MESSAGE]

    def action_types(self) -> list[str]:
        types = list(self._builtins)
        types.extend(t for t in self._plugins if t not in self._builtins)
        return types


# --- Built-in handlers ---


def handle_send_message(ctx: ActionContext) -> ActionResult:
    """Show a message to the user and wait for their reply.

    Uses the message carried by the action call, or asks the generation
    service for one. An empty reply ends the conversation.
    """
    message = ctx.action_call.args.get("message")
    if not message:
        ctx.cancel_token.raise_if_cancelled()
        parts = ctx.generate_content(
            ctx.transcript,
            GenerateConfig(
                model_tier=ModelTier.CHEAP,
                temperature=0.7,
                expected_response=ResponseShape(text=True),
            ),
            ctx.options,
        )
        ctx.cancel_token.raise_if_cancelled()
        message = joined_text(parts) or ""

    items = []
    if message:
        ctx.bus.assistant_message(message)
        items.append(Turn(role=Role.ASSISTANT, text=message))

    ctx.wait_if_paused()
    reply = ctx.interaction.ask_for_input("Your answer", message or "What would you like to do next?", ctx.options)
    ctx.cancel_token.raise_if_cancelled()
    if not reply.answer.strip():
        return ActionResult(items=items, break_loop=True)

    ctx.bus.user_message(reply.answer)
    items.append(Turn(role=Role.USER, text=reply.answer))
    return ActionResult(items=items)


def handle_end_conversation(ctx: ActionContext) -> ActionResult:
    message = ctx.action_call.args.get("message")
    items = []
    if message:
        ctx.bus.assistant_message(message)
        items.append(Turn(role=Role.ASSISTANT, text=message))
    return ActionResult(items=items, break_loop=True)


def default_action_registry() -> ActionHandlerRegistry:
    """Registry with the conversation built-ins. runContainerTask is added by the runtime."""
    registry = ActionHandlerRegistry()
    registry.register(SEND_MESSAGE, handle_send_message)
    registry.register(END_CONVERSATION, handle_end_conversation)
    return registry
