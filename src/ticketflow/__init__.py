"""Dependency-aware orchestration of long-running agent sessions."""

__version__ = "0.1.0"
