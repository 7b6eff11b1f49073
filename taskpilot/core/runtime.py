"""Process-wide services and their wiring.

The secret registry, knowledge store, bus and container engine are built once
per process and injected into the dispatch loop and orchestrator. close()
releases them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from taskpilot.core.actions import RUN_CONTAINER_TASK, ActionHandler, ActionHandlerRegistry, default_action_registry
from taskpilot.core.cancellation import CancellationToken, PauseGate
from taskpilot.core.config import TaskPilotConfig
from taskpilot.core.dispatch import ActionDispatchLoop
from taskpilot.core.events import ContentBus
from taskpilot.core.generation import GenerateContentFn, GenerateImageFn, no_image_generation
from taskpilot.core.interaction import ConsoleInteraction, UserInteraction
from taskpilot.core.knowledge import KnowledgeStore
from taskpilot.core.secrets import SecretRegistry
from taskpilot.sandbox.engine import DockerEngine, EngineConfig
from taskpilot.task.orchestrator import ContainerTaskOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: TaskPilotConfig
    secrets: SecretRegistry
    knowledge: KnowledgeStore
    bus: ContentBus
    engine: Any
    interaction: UserInteraction
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    pause_gate: PauseGate = field(default_factory=PauseGate)
    actions: ActionHandlerRegistry = field(default_factory=default_action_registry)

    def __post_init__(self) -> None:
        self.orchestrator = ContainerTaskOrchestrator(
            engine=self.engine,
            config=self.config,
            secrets=self.secrets,
            knowledge=self.knowledge,
        )
        self.actions.register(RUN_CONTAINER_TASK, self.orchestrator)

    def register_plugin(self, action_type: str, handler: ActionHandler) -> None:
        """Register a plugin action handler. Call before the loop starts."""
        self.actions.register(action_type, handler, plugin=True)

    def dispatch_loop(
        self,
        generate_content: GenerateContentFn,
        generate_image: GenerateImageFn = no_image_generation,
        options: dict[str, Any] | None = None,
    ) -> ActionDispatchLoop:
        return ActionDispatchLoop(
            self.actions,
            generate_content,
            bus=self.bus,
            interaction=self.interaction,
            generate_image=generate_image,
            cancel_token=self.cancel_token,
            pause_gate=self.pause_gate,
            secrets=self.secrets,
            options=options,
        )

    def close(self) -> None:
        self.knowledge.close()
        self.secrets.clear()


def build_runtime(
    config: TaskPilotConfig,
    *,
    engine: Any = None,
    interaction: UserInteraction | None = None,
    bus: ContentBus | None = None,
) -> Runtime:
    """Build the services for one process from its configuration."""
    secrets = SecretRegistry()
    if engine is None:
        engine = DockerEngine(
            EngineConfig(
                allowed_images=list(config.allowed_images),
                docker_timeout=config.docker_timeout,
            )
        )
    config.state_dir.mkdir(parents=True, exist_ok=True)
    knowledge = KnowledgeStore(config.knowledge_db_path)
    logger.info(f"Runtime ready for {config.project_root}")
    return Runtime(
        config=config,
        secrets=secrets,
        knowledge=knowledge,
        bus=bus or ContentBus(secrets),
        engine=engine,
        interaction=interaction or ConsoleInteraction(),
    )
