"""TaskPilot - agentic action dispatch with sandboxed container tasks.

The generation service picks one action per turn; container tasks run a bounded
command loop inside an ephemeral Docker container.
"""

__version__ = "0.1.0"
