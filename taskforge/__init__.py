"""
Taskforge - phase-based orchestration of autonomous coding agents.

Drives a task from a natural-language request through requirements analysis,
task breakdown, team execution, integration testing and merge, with
event-sourced recovery and governance (retry, budget, secrets redaction).
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
