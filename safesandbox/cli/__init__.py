"""CLI application setup using Typer.

Provides the command-line interface for inspecting sandbox policies.
"""

from safesandbox.cli.main import app

__all__ = ["app"]
