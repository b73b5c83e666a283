"""Queue-backed runtime for node-graph workflows."""

__version__ = "1.0.0"
