"""Execution scheduler that runs coding-agent attempts against project tasks."""

__version__ = "0.1.0"
