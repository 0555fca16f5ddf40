"""CLI package for taskforge.

Modules:
    app.py      - Main Typer app, version callback and every command
    display.py  - Rich formatting utilities (format_status, format_cost, tables)
    common.py   - Shared helpers (get_console, config loading, service wiring)

Usage:
    from taskforge.cli import app, cli_main
"""
from taskforge.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
