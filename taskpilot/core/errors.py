"""Exception hierarchy for TaskPilot.

Declined confirmations, declined secrets, an exceeded context budget and the
command cap are outcomes, not exceptions. They are reported as status values
by the loops that observe them.
"""


class TaskPilotError(Exception):
    """Base error for all TaskPilot failures."""

    pass


class ConfigError(TaskPilotError):
    """Configuration file is unreadable or fails schema validation."""

    pass


class CancellationRequested(TaskPilotError):
    """Cooperative cancellation was observed at a checkpoint."""

    pass


class ArgumentValidationError(TaskPilotError):
    """Function call arguments do not match the declared schema."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"Invalid arguments for '{name}': {message}")


class PatchApplyError(TaskPilotError):
    """Unified diff could not be applied to the target content."""

    pass


class PathTraversalError(TaskPilotError):
    """An archive entry or host path resolves outside its allowed root."""

    def __init__(self, path: str, root: str | None = None):
        self.path = path
        self.root = root
        where = f" '{root}'" if root else ""
        super().__init__(f"Path '{path}' escapes the destination root{where}")


class KnowledgeError(TaskPilotError):
    """Knowledge store rejected a key or value."""

    pass
