"""Durable human-in-the-loop workflow engine."""

__version__ = "1.0.0"
