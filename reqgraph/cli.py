"""Typer-based CLI for reqgraph."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__, config_manager
from .errors import HarFormatError, NoTargetFound
from .graph_export import export_dot, export_html, export_json
from .har import load_corpus
from .orchestrator import AnalysisOrchestrator
from .printer import render_reverse, render_tree

app = typer.Typer(
    help="Trace the requests a recorded API call depends on.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

PROVIDERS = ["openai", "ollama", "groq", "anthropic"]
EXPORT_FORMATS = ("json", "dot", "html")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"reqgraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    )
):
    """reqgraph: build the dependency graph behind a request in a HAR capture."""
    pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _parse_inputs(values: Optional[List[str]]) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected name=value, got '{item}'.", param_hint="--input")
        parsed[name.strip()] = value
    return parsed


def _print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")


@app.command("analyze")
def analyze(
    har_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="HAR capture of the browser session."),
    cookie_file: Optional[Path] = typer.Argument(None, exists=True, dir_okay=False, help="Cookie export (JSON array)."),
    goal: str = typer.Option(..., "--goal", "-g", help="Description of the action to reproduce."),
    inputs: Optional[List[str]] = typer.Option(None, "--input", "-i", help="Known input as name=value; repeatable."),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=2, help="Step budget (default from config)."),
    export: Optional[Path] = typer.Option(None, "--export", "-o", help="Write the graph to this file."),
    fmt: str = typer.Option("json", "--format", "-f", help="Export format: json, dot, html."),
    reverse: bool = typer.Option(False, "--reverse", help="Print dependencies before the requests that use them."),
    progress: bool = typer.Option(False, "--progress", help="Print the partial graph after every iteration."),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging."),
):
    """Find the request behind GOAL and trace every value it depends on."""
    _configure_logging(verbose)
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise typer.BadParameter(f"Unknown format '{fmt}'. Choose from: {', '.join(EXPORT_FORMATS)}")
    input_variables = _parse_inputs(inputs)

    on_iteration = None
    if progress:

        def on_iteration(state, graph):
            console.print(f"\n[dim]Iteration {state.iterations} (step {state.steps_used}), "
                          f"{len(state.work_queue)} queued[/dim]")
            console.print(render_tree(graph, state.master_node), markup=False, highlight=False)

    orchestrator = AnalysisOrchestrator()
    try:
        corpus = orchestrator.load(har_file, cookie_file)
        with console.status("[bold cyan]Resolving dependencies...[/bold cyan]"):
            result = orchestrator.analyze(
                corpus, goal, input_variables=input_variables, max_steps=max_steps, on_iteration=on_iteration,
            )
    except (NoTargetFound, HarFormatError) as exc:
        _print_error(str(exc))
        raise typer.Exit(code=1)

    status_color = "green" if result.completed else "yellow"
    console.print(f"\n[bold]Target:[/bold] {escape(result.target_url) or '(none)'}")
    console.print(
        f"[bold]Status:[/bold] [{status_color}]{result.status_text}[/{status_color}]  "
        f"steps={result.steps_used} iterations={result.iterations} nodes={len(result.graph)}"
    )
    if result.cycle:
        console.print(f"[yellow]⚠ Cycle detected:[/yellow] {result.cycle}")

    if result.master_node is not None:
        typer.echo("")
        typer.echo(render_reverse(result.graph) if reverse else render_tree(result.graph, result.master_node))

    if export is not None:
        if fmt == "json":
            export_json(result, export)
        elif fmt == "dot":
            export_dot(result.graph, export)
        else:
            export_html(result.graph, export, title=f"Dependencies of {result.target_url}")
        console.print(f"\n[green]✓[/green] Exported {fmt.upper()} graph to {export}")


@app.command("endpoints")
def endpoints(
    har_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="HAR capture of the browser session."),
):
    """List the endpoints that can be picked as analysis targets."""
    try:
        summaries = load_corpus(har_file).endpoints
    except HarFormatError as exc:
        _print_error(str(exc))
        raise typer.Exit(code=1)

    if not summaries:
        typer.echo("No endpoints of interest found.")
        raise typer.Exit(code=0)

    table = Table(show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Method")
    table.add_column("URL", overflow="fold")
    table.add_column("Type")
    table.add_column("Preview", overflow="fold")
    for index, ep in enumerate(summaries, 1):
        table.add_row(str(index), ep.method, escape(ep.url), ep.mime_type, escape(ep.preview))
    console.print(table)


@app.command("set-llm")
def set_llm(
    provider: str = typer.Argument(..., help="LLM provider: openai, ollama, groq, anthropic"),
    model: str = typer.Option(None, "--model", "-m", help="Model name (uses provider default if not set)."),
    api_key: str = typer.Option(None, "--api-key", "-k", help="API key for cloud providers."),
    endpoint: str = typer.Option(None, "--endpoint", "-e", help="Custom endpoint URL (LM Studio, vLLM, ...)."),
):
    """Switch the LLM provider used as the oracle."""
    provider = provider.lower().strip()
    if provider not in PROVIDERS:
        _print_error(f"Unknown provider '{provider}'. Choose from: {', '.join(PROVIDERS)}")
        raise typer.Exit(code=1)

    current = config_manager.load_config()
    defaults = config_manager.get_provider_config(provider)
    resolved_model = model or defaults.get("model", "")
    resolved_endpoint = endpoint or defaults.get("endpoint", "")
    resolved_api_key = api_key or ""
    if not resolved_api_key and current.get("provider") == provider and current.get("api_key"):
        resolved_api_key = current["api_key"]
        typer.echo(f"Reusing existing API key for {provider}")

    if not config_manager.save_config(provider, resolved_model, resolved_api_key, resolved_endpoint):
        _print_error("Failed to save configuration!")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] LLM provider set to: {provider}")
    typer.echo(f"  Provider: {typer.style(provider, fg=typer.colors.CYAN)}")
    typer.echo(f"  Model:    {typer.style(resolved_model, fg=typer.colors.CYAN)}")
    if resolved_endpoint:
        typer.echo(f"  Endpoint: {resolved_endpoint}")


@app.command("unset-llm")
def unset_llm():
    """Remove the saved LLM configuration and fall back to defaults."""
    if not config_manager.CONFIG_FILE.exists():
        typer.echo("No LLM configuration found. Nothing to unset.")
        raise typer.Exit(code=0)
    if not config_manager.clear_llm_config():
        _print_error("Failed to update configuration!")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] LLM configuration removed.")


@app.command("show-llm")
def show_llm():
    """Show current LLM provider configuration."""
    cfg = config_manager.load_config()
    api_key = cfg.get("api_key", "")

    typer.echo(f"  Provider  {typer.style(cfg.get('provider', 'openai'), bold=True)}")
    typer.echo(f"  Model     {typer.style(cfg.get('model', ''), bold=True)}")
    if cfg.get("endpoint"):
        typer.echo(f"  Endpoint  {cfg['endpoint']}")
    if api_key:
        typer.echo(f"  API Key   {api_key[:8] + '•' * min(max(len(api_key) - 8, 0), 16)}")
    else:
        typer.echo("  API Key   (not set)")
    typer.echo(f"  Config    {config_manager.CONFIG_FILE}")


@app.command("set-analysis")
def set_analysis(
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=2, help="Default step budget."),
    url_chunk_size: Optional[int] = typer.Option(None, "--chunk-size", min=1, help="Endpoints per target prompt."),
    max_prompt_chars: Optional[int] = typer.Option(None, "--max-prompt-chars", min=0, help="Prompt cap, 0 for none."),
):
    """Change the saved analysis defaults."""
    values = {
        key: value
        for key, value in {
            "max_steps": max_steps,
            "url_chunk_size": url_chunk_size,
            "max_prompt_chars": max_prompt_chars,
        }.items()
        if value is not None
    }
    if not values:
        for key, value in config_manager.load_analysis_config().items():
            typer.echo(f"  {key} = {value}")
        raise typer.Exit(code=0)

    if not config_manager.save_analysis_config(**values):
        _print_error("Failed to save configuration!")
        raise typer.Exit(code=1)
    for key, value in values.items():
        typer.echo(f"  {key} = {value}")


if __name__ == "__main__":
    app()
