"""Sandboxed container execution."""

from taskpilot.sandbox.engine import DockerEngine, EngineConfig, KNOWN_IMAGES

__all__ = ["DockerEngine", "EngineConfig", "KNOWN_IMAGES"]
