"""Typer-based CLI for codewiki documentation generation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config_manager import load_wiki_config
from .errors import FatalError
from .graph_export import export_dot, export_mermaid
from .pipeline import Pipeline, RunResult

app = typer.Typer(
    help="📚 codewiki: multi-language code analysis into a documentation model.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"codewiki v{__version__}")
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
    """codewiki: symbols, graphs, findings and descriptions for a whole source tree."""
    pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


@app.command("generate")
def generate(
    root: Path = typer.Argument(..., help="Root directory of the project to document."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Site title."),
    ai: Optional[bool] = typer.Option(None, "--ai/--no-ai", help="Enable AI enrichment."),
    ai_mock: bool = typer.Option(False, "--ai-mock", help="Use the offline mock provider (implies --ai)."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p",
                                           help="LLM provider: ollama, groq, openai, anthropic, gemini, openrouter."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LLM model name."),
    security: Optional[bool] = typer.Option(None, "--security/--no-security", help="Run the security scanner."),
    refactoring: Optional[bool] = typer.Option(None, "--refactoring/--no-refactoring",
                                               help="Run the refactoring advisor."),
    function_docs: bool = typer.Option(False, "--function-docs", help="Enrich every function too."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Worker threads."),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging."),
):
    """Analyze ROOT and write document.json, assets/search_index.json and graph.dot.

    Example:
      codewiki generate ./src --output wiki_site --ai-mock
    """
    _configure_logging(verbose)
    overrides = {
        "output_dir": output,
        "site_title": title,
        "ai_enabled": True if ai_mock else ai,
        "ai_use_mock": ai_mock or None,
        "ai_provider": provider,
        "ai_model": model,
        "security_enabled": security,
        "refactoring_enabled": refactoring,
        "function_docs": function_docs or None,
        "max_workers": workers,
    }
    try:
        cfg = load_wiki_config(overrides)
        console.print(f"\n[bold cyan]📚 Generating documentation for '{root}'...[/bold cyan]\n")
        result = Pipeline(cfg).run(root)
    except FatalError as exc:
        console.print(f"[red]✗ {exc.message}[/red]")
        for diagnostic in exc.diagnostics[:20]:
            console.print(f"  [dim]{diagnostic.kind.value}[/dim] {diagnostic.location}: {diagnostic.message}")
        raise typer.Exit(1)

    out_dir = cfg.output_dir
    _write_outputs(result, out_dir)
    _print_summary(result, out_dir)


def _write_outputs(result: RunResult, out_dir: Path) -> None:
    assets = out_dir / "assets"
    assets.mkdir(parents=True, exist_ok=True)
    (out_dir / "document.json").write_text(result.document.to_json(), encoding="utf-8")
    (assets / "search_index.json").write_text(result.index.to_json(), encoding="utf-8")
    export_dot(result.document, out_dir / "graph.dot")
    export_mermaid(result.document, out_dir / "diagrams")


def _print_summary(result: RunResult, out_dir: Path) -> None:
    overview = result.document.overview
    report = result.document.report

    table = Table(title="Generation Summary", show_header=True, show_lines=False)
    table.add_column("Metric", style="cyan", width=18)
    table.add_column("Value", min_width=30)
    table.add_row("Files", str(overview.file_count))
    table.add_row("Symbols", str(overview.symbol_count))
    table.add_row("Languages", ", ".join(f"{lang} ({n})" for lang, n in overview.languages) or "-")
    table.add_row("Call edges", str(overview.call_edge_count))
    table.add_row("Unresolved", str(overview.unresolved_count))
    table.add_row("Cycles", str(len(overview.cycles)))
    generated = sum(1 for r in result.enrichments.values() if not r.is_fallback)
    table.add_row("Enrichment", f"{generated} generated, {len(result.enrichments) - generated} fallback")
    table.add_row("Diagnostics", ", ".join(f"{k}: {v}" for k, v in report.counts().items()) or "none")
    console.print(table)

    if overview.hotspots:
        console.print("\n[bold yellow]⚠️  Security Hotspots[/bold yellow]")
        for hotspot in overview.hotspots[:5]:
            console.print(f"  • {hotspot.file_path} (risk {hotspot.risk_score}, worst: {hotspot.worst.value})")

    console.print(f"\n[bold green]✅ Wrote documentation model to {out_dir}[/bold green]")


if __name__ == "__main__":
    app()
