"""Action dispatch loop.

Each iteration asks the generation service for exactly one action (a
selectAction call at low temperature on the cheap tier), resolves its handler
and appends the handler's turns. A handler exception ends the loop with a
system message; nothing is retried here.
"""

import logging
import uuid
from typing import Any

from taskpilot.core.actions import ActionContext, ActionHandlerRegistry
from taskpilot.core.cancellation import CancellationToken, PauseGate
from taskpilot.core.errors import CancellationRequested
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import (
    GenerateConfig,
    GenerateContentFn,
    GenerateImageFn,
    ModelTier,
    Part,
    ResponseShape,
    function_calls,
    no_image_generation,
)
from taskpilot.core.interaction import UserInteraction
from taskpilot.core.models import FunctionCall, Turn
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.core.secrets import SecretRegistry

logger = logging.getLogger(__name__)

SELECT_ACTION = "selectAction"
SELECT_TEMPERATURE = 0.2


def select_action_def(action_types: list[str]) -> FunctionDef:
    return FunctionDef(
        name=SELECT_ACTION,
        description="Choose the single next action to take in this conversation.",
        parameters=object_schema(
            {
                "actionType": {"type": "string", "enum": action_types},
                "message": {
                    "type": "string",
                    "description": "Message for the user, used by sendMessage and endConversation.",
                },
            },
            required=["actionType"],
        ),
    )


class ActionDispatchLoop:
    """Outer loop choosing and running one action per iteration."""

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        generate_content: GenerateContentFn,
        *,
        bus: ContentBus,
        interaction: UserInteraction,
        generate_image: GenerateImageFn = no_image_generation,
        cancel_token: CancellationToken | None = None,
        pause_gate: PauseGate | None = None,
        secrets: SecretRegistry | None = None,
        options: dict[str, Any] | None = None,
    ):
        self.registry = registry
        self.bus = bus
        self.interaction = interaction
        self.generate_image = generate_image
        self.cancel_token = cancel_token or CancellationToken()
        self.pause_gate = pause_gate or PauseGate()
        self.secrets = secrets
        self.options = options or {}
        self._raw_generate = generate_content

    def generate(self, transcript: list[Turn], config: GenerateConfig, options: dict[str, Any]) -> list[Part]:
        if self.secrets is not None:
            transcript = self.secrets.redact(transcript)
        return self._raw_generate(transcript, config, options)

    def wait_if_paused(self) -> None:
        self.pause_gate.wait_if_paused(self.cancel_token)

    def _select(self, transcript: list[Turn]) -> FunctionCall | None:
        definition = select_action_def(self.registry.action_types())
        parts = self.generate(
            transcript,
            GenerateConfig(
                function_defs=[definition],
                required_function_name=SELECT_ACTION,
                model_tier=ModelTier.CHEAP,
                temperature=SELECT_TEMPERATURE,
                expected_response=ResponseShape(function_call=True),
            ),
            self.options,
        )
        calls = function_calls(parts)
        if len(calls) > 1:
            logger.warning(f"Model selected {len(calls)} actions; only the first is used")
        return calls[0] if calls else None

    def run(self, transcript: list[Turn], forced_action_type: str | None = None) -> list[Turn]:
        """Run until a handler breaks the loop. Returns the extended transcript."""
        transcript = list(transcript)
        forced = forced_action_type

        while True:
            if self.cancel_token.is_cancelled:
                self.bus.system_message("Task cancelled by user")
                break
            self.wait_if_paused()
            if self.cancel_token.is_cancelled:
                self.bus.system_message("Task cancelled by user")
                break

            if forced:
                call = FunctionCall(
                    name=SELECT_ACTION,
                    id=f"action-{uuid.uuid4().hex[:8]}",
                    args={"actionType": forced},
                )
                forced = None
            else:
                try:
                    call = self._select(transcript)
                except Exception as e:
                    logger.exception("Action selection failed")
                    self.bus.system_message(f"Failed to select the next action: {e}")
                    break
                if call is None:
                    self.bus.system_message("No action was selected. Stopping.")
                    break

            action_type = call.args.get("actionType")
            logger.info(f"Dispatching action {action_type}")
            handler = self.registry.resolve(action_type)
            ctx = ActionContext(
                action_call=call,
                transcript=transcript,
                options=self.options,
                generate_content=self.generate,
                generate_image=self.generate_image,
                wait_if_paused=self.wait_if_paused,
                cancel_token=self.cancel_token,
                bus=self.bus,
                interaction=self.interaction,
            )
            try:
                result = handler(ctx)
            except CancellationRequested:
                self.bus.system_message("Task cancelled by user")
                break
            except Exception as e:
                logger.exception(f"Action handler {action_type} raised")
                self.bus.system_message(f"Error while handling action {action_type}: {e}")
                break

            transcript.extend(result.items)
            if result.break_loop:
                break

        return transcript
