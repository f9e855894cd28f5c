"""CLI for Voice Agent Gym.

Thin Typer wrappers around existing modules for running test suites,
DRY analysis, snippet-expanded export, and configuration validation.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from voice_gym.dry import analyze_graph
from voice_gym.graph.loader import load_graph
from voice_gym.runner import SuiteResult, SuiteRunner
from voice_gym.suite.loader import load_suite
from voice_gym.templating import expand_graph_snippets
from voice_gym.types import RunConfig, VoiceGymError, load_run_config

app = typer.Typer(
    name="voice-gym",
    help="Voice Agent Gym -- simulate and score conversations with voice agents.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

STATUS_STYLE = {"passed": "green", "failed": "red", "error": "yellow"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _fail(exc: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(exc))}")
    raise typer.Exit(code=2)


def _print_results(result: SuiteResult) -> None:
    table = Table(title=f"Results: {result.graph_name}")
    table.add_column("Test")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Turns", justify="right")
    table.add_column("Nodes")
    table.add_column("Min score", justify="right")

    for run in result.results:
        status = run.verdict.status.value
        scores = [r.score for r in run.verdict.results]
        table.add_row(
            run.test_name,
            f"[{STATUS_STYLE[status]}]{status}[/{STATUS_STYLE[status]}]",
            run.transcript.termination_reason.value,
            str(run.transcript.turn_count),
            " > ".join(run.nodes_visited),
            f"{min(scores):.2f}" if scores else "-",
        )

    console.print(table)
    console.print(
        f"[green]{result.passed} passed[/green], [red]{result.failed} failed[/red], "
        f"[yellow]{result.errors} error(s)[/yellow]"
    )


@app.command()
def run(
    graph: Annotated[Path, typer.Option(help="Agent graph file (JSON or YAML).")],
    tests: Annotated[Path, typer.Option(help="Test suite file (JSON or YAML).")],
    config: Annotated[Optional[Path], typer.Option(help="Run config YAML.")] = None,
    global_metrics: Annotated[Optional[Path], typer.Option(help="Extra global metrics file.")] = None,
    max_turns: Annotated[Optional[int], typer.Option(help="Override max turns.")] = None,
    concurrency: Annotated[Optional[int], typer.Option(help="Override max concurrent tests.")] = None,
    test: Annotated[Optional[list[str]], typer.Option("--test", "-t", help="Run only named tests.")] = None,
    output: Annotated[Optional[Path], typer.Option(help="Write full results as JSON.")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Simulate every test against the agent graph and judge the transcripts."""
    _setup_logging(verbose)
    try:
        agent_graph = load_graph(graph)
        suite = load_suite(tests, global_metrics)
        run_config = load_run_config(config) if config else RunConfig()
    except (FileNotFoundError, VoiceGymError) as exc:
        _fail(exc)
        return

    overrides: dict[str, int] = {}
    if max_turns is not None:
        overrides["max_turns"] = max_turns
    if concurrency is not None:
        overrides["max_concurrency"] = concurrency
    if overrides:
        try:
            run_config = RunConfig.model_validate({**run_config.model_dump(), **overrides})
        except ValidationError as exc:
            _fail(exc)
            return

    if test:
        wanted = set(test)
        suite = suite.model_copy(update={"tests": [t for t in suite.tests if t.name in wanted]})

    try:
        runner = SuiteRunner(agent_graph, run_config)
    except VoiceGymError as exc:
        _fail(exc)
        return

    result = runner.run(suite)
    _print_results(result)

    if output is not None:
        output.write_text(result.model_dump_json(indent=2))
        console.print(f"Saved results to {output}")

    if not result.all_passed:
        raise typer.Exit(code=1)


@app.command()
def dry(
    graph: Annotated[Path, typer.Option(help="Agent graph file (JSON or YAML).")],
    min_length: Annotated[int, typer.Option(help="Minimum length for exact matches.")] = 20,
    fuzzy_min_length: Annotated[int, typer.Option(help="Minimum length for fuzzy matches.")] = 30,
    threshold: Annotated[float, typer.Option(help="Fuzzy similarity threshold.")] = 0.8,
    as_json: Annotated[bool, typer.Option("--json", help="Print the report as JSON.")] = False,
) -> None:
    """Find repeated prompt text worth extracting into snippets."""
    try:
        agent_graph = load_graph(graph)
    except (FileNotFoundError, VoiceGymError) as exc:
        _fail(exc)
        return

    report = analyze_graph(
        agent_graph,
        exact_min_length=min_length,
        fuzzy_threshold=threshold,
        fuzzy_min_length=fuzzy_min_length,
    )
    if as_json:
        typer.echo(report.model_dump_json(indent=2))
        return
    if report.is_clean:
        console.print("[green]No duplicated prompt text found.[/green]")
        return

    if report.exact:
        table = Table(title="Exact duplicates")
        table.add_column("Text")
        table.add_column("Locations")
        for match in report.exact:
            table.add_row(match.text, ", ".join(match.locations))
        console.print(table)

    if report.fuzzy:
        table = Table(title="Similar text")
        table.add_column("Similarity", justify="right")
        table.add_column("Variants")
        table.add_column("Locations")
        for match in report.fuzzy:
            table.add_row(f"{match.similarity:.2f}", "\n".join(match.variants), ", ".join(match.locations))
        console.print(table)


@app.command()
def export(
    graph: Annotated[Path, typer.Option(help="Agent graph file (JSON or YAML).")],
    output: Annotated[Path, typer.Option(help="Destination JSON file.")],
) -> None:
    """Write the graph with every snippet reference resolved."""
    try:
        agent_graph = load_graph(graph)
    except (FileNotFoundError, VoiceGymError) as exc:
        _fail(exc)
        return

    expanded = expand_graph_snippets(agent_graph)
    output.write_text(json.dumps(expanded.model_dump(mode="json"), indent=2) + "\n")
    console.print(f"Exported {len(expanded.nodes)} node(s) to {output}")


@app.command()
def validate(
    graph: Annotated[Path, typer.Option(help="Agent graph file (JSON or YAML).")],
    tests: Annotated[Optional[Path], typer.Option(help="Test suite file to validate too.")] = None,
) -> None:
    """Check a graph (and optionally a suite) without running anything."""
    try:
        agent_graph = load_graph(graph)
        console.print(f"Graph '{agent_graph.name}': {len(agent_graph.nodes)} node(s) OK")
        if tests is not None:
            suite = load_suite(tests)
            console.print(
                f"Suite: {len(suite.tests)} test(s), "
                f"{len(suite.global_metrics)} global metric(s) OK"
            )
    except (FileNotFoundError, VoiceGymError) as exc:
        _fail(exc)


if __name__ == "__main__":
    app()
