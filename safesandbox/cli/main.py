"""CLI entry point and base commands.

Provides the main CLI application with commands for:
- check: Dry-run a URL against a network policy
- presets: List the built-in example policies
- version: Show version information
"""

# Configure logging early before other imports
import safesandbox.logging_config  # noqa: F401

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from safesandbox.mediator.decisions import Block, Forward, InterceptedRequest, ServeVirtual
from safesandbox.mediator.engine import evaluate
from safesandbox.policy import NetworkPolicy
from safesandbox.presets import get_preset, list_presets
from safesandbox.settings import get_settings

app = typer.Typer(
    name="safesandbox",
    help="Mediated execution sandbox: policy inspection tools",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def _load_policy(policy_file: Path | None, preset: str | None) -> NetworkPolicy:
    if policy_file and preset:
        raise typer.BadParameter("Use either --policy or --preset, not both")
    if preset:
        try:
            return get_preset(preset).policy
        except ValueError as e:
            raise typer.BadParameter(str(e)) from e
    if policy_file:
        try:
            return NetworkPolicy.from_wire(json.loads(policy_file.read_text()))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise typer.BadParameter(f"Invalid policy file: {e}") from e
    return NetworkPolicy()


@app.command()
def check(
    url: Annotated[str, typer.Argument(help="URL the sandboxed code would request")],
    method: Annotated[
        str,
        typer.Option("--method", "-m", help="HTTP method"),
    ] = "GET",
    policy_file: Annotated[
        Optional[Path],  # noqa: UP007
        typer.Option("--policy", "-p", help="JSON file with the network policy", exists=True, dir_okay=False),
    ] = None,
    preset: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--preset", help="Use a built-in preset instead of a file"),
    ] = None,
    origin: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--origin", help="Sandbox origin (defaults to settings)"),
    ] = None,
) -> None:
    """Show how the mediator would decide a request.

    Evaluates the policy without any network access. Forwarded requests
    can still be blocked later for size or upstream failures.
    """
    policy = _load_policy(policy_file, preset)
    sandbox_origin = (origin or get_settings().sandbox_origin).rstrip("/")
    request = InterceptedRequest.build(method, url, context_id="cli")
    decision = evaluate(request, policy, sandbox_origin)

    if isinstance(decision, Block):
        console.print(
            Panel(
                f"[bold red]BLOCK[/bold red] ({decision.status}, {decision.reason.value})\n{decision.message}",
                title="Decision",
                border_style="red",
            )
        )
        raise typer.Exit(code=1)

    if isinstance(decision, ServeVirtual):
        body = f"[bold green]SERVE VIRTUAL[/bold green] {decision.path}\n[dim]{decision.content[:200]}[/dim]"
    elif isinstance(decision, Forward) and decision.local:
        body = (
            f"[bold green]LOCAL ASSET[/bold green] via {policy.cache_strategy.value}\n"
            f"{decision.target}"
        )
    else:
        route = "proxy" if decision.via_proxy else "direct"
        body = f"[bold green]FORWARD[/bold green] ({route})\n{decision.target}"
        if policy.max_content_length is not None:
            body += f"\n[dim]Declared bodies over {policy.max_content_length} bytes become 413[/dim]"
    console.print(Panel(body, title="Decision", border_style="green"))


@app.command()
def presets() -> None:
    """List the built-in example policies."""
    table = Table(title="Presets", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Label")
    table.add_column("Allow")
    table.add_column("Proxy")
    table.add_column("Files", justify="right")
    table.add_column("Cache")

    for preset in list_presets():
        policy = preset.policy
        table.add_row(
            preset.id,
            preset.label,
            ", ".join(sorted(policy.allowed_domains)) or "[dim]none[/dim]",
            policy.proxy_url or "[dim]off[/dim]",
            str(len(policy.virtual_files)),
            policy.cache_strategy.value,
        )

    console.print(table)


@app.command()
def version() -> None:
    """Show SafeSandbox version information."""
    from safesandbox import __version__

    console.print(
        Panel(
            f"[bold]SafeSandbox[/bold] v{__version__}\n"
            "Mediated execution sandbox with heartbeat supervision",
            title="Version",
            border_style="blue",
        )
    )


# Entry point for: python -m safesandbox.cli.main
if __name__ == "__main__":
    app()
