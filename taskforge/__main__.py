"""
Entry point for running taskforge as a module.

Allows running as: python -m taskforge
"""

from taskforge.cli import cli_main

if __name__ == "__main__":
    cli_main()
