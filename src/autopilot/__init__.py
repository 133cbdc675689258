"""Autonomous goal and plan orchestrator."""

__version__ = "0.1.0"
