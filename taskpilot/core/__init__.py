"""Core dispatch engine: transcript models, dispatch loop, and shared services."""
