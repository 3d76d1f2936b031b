"""CLI for the Archetype Detection Engine.

Provides command-line access to questionnaire submission, archetype
detection, quick-win tracking and catalog inspection.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .catalog import (
    InvalidCatalogError,
    get_catalog,
    save_catalog,
    load_catalog,
    validate_catalog,
)
from .config import find_config_file, get_config, load_config, setup_logging
from .engine import DetectionEngine, NoResponsesError
from .schema import (
    AssessmentSummary,
    DetectionResult,
    Dimension,
    ImpactLevel,
    QuickWin,
    QuickWinStatus,
    Response,
    ScoreColor,
)
from .store import JsonFileStore, StorageError

console = Console()

EXIT_ERROR = 1
EXIT_NO_RESPONSES = 2

COLOR_STYLES = {
    ScoreColor.GREEN: "green",
    ScoreColor.YELLOW: "yellow",
    ScoreColor.RED: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="archetype-engine")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to archetype-engine.yaml (default: searched automatically)"
)
@click.option(
    "--store", "-s", "store_path",
    type=click.Path(dir_okay=False),
    help="JSON state file (default: from config)"
)
@click.option(
    "--catalog", "-c", "catalog_path",
    type=click.Path(dir_okay=False),
    help="Archetype catalog YAML/JSON (default: bundled catalog)"
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Override the configured log level"
)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    store_path: Optional[str],
    catalog_path: Optional[str],
    log_level: Optional[str],
):
    """Archetype Detection and Recommendation Engine.

    Diagnoses systems archetypes from health-check responses and proposes
    quick wins for the archetypes it finds.
    """
    try:
        path = Path(config_path) if config_path else find_config_file()
        if path:
            load_config(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        sys.exit(EXIT_ERROR)

    cfg = get_config()
    setup_logging(cfg.logging, log_level)

    ctx.ensure_object(dict)
    ctx.obj["store_path"] = store_path or cfg.storage.path
    ctx.obj["catalog_path"] = catalog_path or cfg.catalog.path


def _build_engine(ctx: click.Context) -> DetectionEngine:
    catalog = get_catalog(ctx.obj["catalog_path"])
    store = JsonFileStore(ctx.obj["store_path"], catalog)
    return DetectionEngine(store)


def _fail(message: str, code: int = EXIT_ERROR):
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(code)


def _no_responses(e: NoResponsesError):
    console.print(f"[yellow]{e}[/yellow]")
    console.print("Complete the health check first: archetype-engine submit -u USER -r responses.json")
    sys.exit(EXIT_NO_RESPONSES)


# =============================================================================
# Responses and detection
# =============================================================================


def parse_responses_file(path: Path) -> list[Response]:
    """Read a questionnaire submission.

    Accepts a JSON array of responses or an object with a "responses" array.
    Each item needs question_id (or questionId), score (or response_value)
    and dimension; comment is optional.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("responses", [])
    if not isinstance(data, list):
        raise ValueError("Expected a JSON array of responses")

    responses = []
    for i, item in enumerate(data, 1):
        if not isinstance(item, dict):
            raise ValueError(f"Response #{i} is not an object")
        item = dict(item)
        if "questionId" in item and "question_id" not in item:
            item["question_id"] = item.pop("questionId")
        if "response_value" in item and "score" not in item:
            item["score"] = item.pop("response_value")
        try:
            responses.append(Response.model_validate(item))
        except ValidationError as e:
            raise ValueError(f"Response #{i} is invalid: {e.errors()[0]['msg']}") from e
    return responses


@main.command("submit")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option(
    "--responses", "-r", "responses_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with questionnaire responses"
)
@click.option("--detect/--no-detect", default=False, help="Run detection right after saving")
@click.pass_context
def submit_cmd(ctx: click.Context, user_id: str, responses_file: str, detect: bool):
    """Save a questionnaire submission for a user.

    Later submissions supersede earlier answers to the same question.

    Examples:
        archetype-engine submit -u acme -r responses.json
        archetype-engine submit -u acme -r responses.json --detect
    """
    try:
        responses = parse_responses_file(Path(responses_file))
        if not responses:
            _fail("No responses in file")

        engine = _build_engine(ctx)
        engine.store.save_responses(user_id, responses)
        console.print(f"[green]✓[/green] Saved {len(responses)} responses for {user_id}")

        if detect:
            result = engine.run_detection(user_id)
            display_result(result, verbose=False)
    except NoResponsesError as e:
        _no_responses(e)
    except (InvalidCatalogError, StorageError, ValueError) as e:
        _fail(str(e))


@main.command("detect")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option(
    "--out", "-o",
    type=click.Path(dir_okay=False),
    help="Output file for JSON results"
)
@click.option("--verbose", "-v", is_flag=True, help="Show insights and scoring breakdown")
@click.option("--json-output", "-j", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_context
def detect_cmd(ctx: click.Context, user_id: str, out: Optional[str], verbose: bool, json_output: bool):
    """Detect archetypes for a user and refresh their system quick wins.

    Examples:
        archetype-engine detect -u acme
        archetype-engine detect -u acme -v
        archetype-engine detect -u acme -j -o result.json
    """
    try:
        engine = _build_engine(ctx)
        if json_output:
            result = engine.run_detection(user_id)
        else:
            with console.status("Detecting archetypes..."):
                result = engine.run_detection(user_id)
    except NoResponsesError as e:
        _no_responses(e)
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))

    if json_output:
        output_json(result, out)
    else:
        display_result(result, verbose)
        if out:
            output_json(result, out)
            console.print(f"\n[green]Results saved to {out}[/green]")


@main.command("explain")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.pass_context
def explain_cmd(ctx: click.Context, user_id: str):
    """Show the evidence behind every archetype without saving anything."""
    try:
        engine = _build_engine(ctx)
        responses = engine.load_response_set(user_id)
        if responses.is_empty:
            raise NoResponsesError(user_id)
        archetypes = engine.store.load_archetype_catalog()
        evidence = engine.matcher.evaluate(responses, archetypes)
        matches = engine.matcher.match(responses, archetypes)
    except NoResponsesError as e:
        _no_responses(e)
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))

    console.print(f"\n[bold blue]Archetype Evidence[/bold blue] for {user_id} ({len(responses)} responses)\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Archetype", style="cyan")
    table.add_column("Low answers", justify="right")
    table.add_column("Diagnostic", justify="right")
    table.add_column("Symptom", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Accepted")

    for e in evidence:
        table.add_row(
            str(e.catalog_index + 1),
            e.archetype.name,
            f"{e.low_scoring_count}/{len(e.archetype.diagnostic_question_ids)}",
            f"{e.diagnostic_ratio:.2f}",
            f"{e.symptom_ratio:.2f}",
            f"{e.confidence:.2f}",
            "[green]✓[/green]" if e.is_accepted else "[dim]✗[/dim]",
        )
    console.print(table)

    if matches and matches[0].is_fallback:
        console.print(f"\n[yellow]No archetype cleared the bar; fallback selects {matches[0].archetype_name}[/yellow]")
    elif not matches:
        console.print("\n[green]No low-scoring diagnostic answers: no archetype detected[/green]")


@main.command("summary")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option("--json-output", "-j", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_context
def summary_cmd(ctx: click.Context, user_id: str, json_output: bool):
    """Show dimension scores and quick-win progress for a user."""
    try:
        engine = _build_engine(ctx)
        assessment = engine.assessment_summary(user_id)
        progress = engine.quick_win_progress(user_id)
        archetypes = engine.store.load_archetype_matches(user_id)
    except NoResponsesError as e:
        _no_responses(e)
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps({
            "assessment": assessment.model_dump(mode="json"),
            "quick_wins": progress.model_dump(mode="json"),
            "archetypes": [a.model_dump(mode="json") for a in archetypes],
        }, indent=2))
        return

    display_assessment(assessment)

    console.print(
        f"\n[bold]Quick Wins:[/bold] {progress.completed}/{progress.total} done "
        f"({progress.completion_rate:.0f}%), {progress.in_progress} in progress, "
        f"{progress.not_started} to do"
    )
    if archetypes:
        console.print("\n[bold]Detected Archetypes:[/bold]")
        for a in archetypes:
            console.print(f"  • {a.archetype_name} [dim]({a.source_dimension.value}, {a.confidence:.2f})[/dim]")


@main.command("clear")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.pass_context
def clear_cmd(ctx: click.Context, user_id: str):
    """Clear a user's detected archetypes. Quick wins are kept."""
    try:
        engine = _build_engine(ctx)
        removed = engine.clear_detection(user_id)
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Cleared {removed} archetype record(s) for {user_id}")


# =============================================================================
# Quick wins
# =============================================================================


@main.group("quick-wins")
def quick_wins_group():
    """List and track quick wins."""


@quick_wins_group.command("list")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option("--json-output", "-j", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_context
def quick_wins_list_cmd(ctx: click.Context, user_id: str, json_output: bool):
    """List all quick wins for a user."""
    try:
        engine = _build_engine(ctx)
        quick_wins = engine.store.load_quick_wins(user_id)
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps([qw.model_dump(mode="json") for qw in quick_wins], indent=2))
        return

    if not quick_wins:
        console.print(f"[yellow]No quick wins for {user_id}[/yellow]")
        return
    display_quick_wins(quick_wins, show_ids=True)


@quick_wins_group.command("add")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option("--title", "-t", required=True, help="What to do")
@click.option(
    "--dimension", "-d",
    required=True,
    type=click.Choice([d.value for d in Dimension], case_sensitive=False),
    help="Dimension the quick win improves"
)
@click.option("--description", default="", help="Longer description")
@click.option(
    "--impact", "impact",
    type=click.Choice([i.value for i in ImpactLevel], case_sensitive=False),
    default=ImpactLevel.MEDIUM.value,
    help="Expected impact"
)
@click.pass_context
def quick_wins_add_cmd(ctx: click.Context, user_id: str, title: str, dimension: str, description: str, impact: str):
    """Add a user quick win. Detection never modifies these."""
    try:
        engine = _build_engine(ctx)
        quick_win = engine.store.add_user_quick_win(
            user_id,
            title=title,
            dimension=Dimension.from_string(dimension),
            description=description,
            impact_level=next(i for i in ImpactLevel if i.value.lower() == impact.lower()),
        )
    except (InvalidCatalogError, StorageError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Added quick win {quick_win.id}: {quick_win.title}")


@quick_wins_group.command("status")
@click.option("--user", "-u", "user_id", required=True, help="User or organization id")
@click.option("--id", "quick_win_id", required=True, help="Quick win id (see 'quick-wins list')")
@click.option("--status", "status", required=True, help="to-do, in-progress or done")
@click.option("--notes", default=None, help="Progress notes")
@click.pass_context
def quick_wins_status_cmd(ctx: click.Context, user_id: str, quick_win_id: str, status: str, notes: Optional[str]):
    """Update the status of a quick win."""
    try:
        new_status = QuickWinStatus.from_string(status)
        engine = _build_engine(ctx)
        quick_win = engine.store.update_quick_win_status(user_id, quick_win_id, new_status, notes)
    except (InvalidCatalogError, StorageError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {quick_win.title}: {quick_win.status.value}")


# =============================================================================
# Catalog
# =============================================================================


@main.group("catalog")
def catalog_group():
    """Inspect and validate the archetype catalog."""


@catalog_group.command("validate")
@click.argument("path", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def catalog_validate_cmd(ctx: click.Context, path: Optional[str]):
    """Validate a catalog file (default: the configured catalog).

    Examples:
        archetype-engine catalog validate
        archetype-engine catalog validate my-archetypes.yaml
    """
    target = path or ctx.obj["catalog_path"]
    is_valid, issues = validate_catalog(target)
    label = target or "bundled catalog"
    if is_valid:
        console.print(f"[green]✓ Catalog valid: {label}[/green]")
        sys.exit(0)

    console.print(f"[red]✗ Catalog invalid: {label}[/red]")
    for issue in issues:
        console.print(f"  - {issue}")
    sys.exit(EXIT_ERROR)


@catalog_group.command("show")
@click.option("--name", "-n", help="Show details for one archetype")
@click.pass_context
def catalog_show_cmd(ctx: click.Context, name: Optional[str]):
    """Show the archetype catalog."""
    try:
        catalog = get_catalog(ctx.obj["catalog_path"])
    except InvalidCatalogError as e:
        _fail(str(e))

    if name:
        archetype = next((a for a in catalog.archetypes if a.name.lower() == name.lower()), None)
        if archetype is None:
            _fail(f"Archetype not found: {name}")
        templates = catalog.templates_for([archetype.name])
        body = (
            f"{archetype.description}\n\n"
            f"[bold]Pattern:[/bold] {archetype.key_pattern}\n"
            f"[bold]Diagnostic questions:[/bold] {', '.join(str(q) for q in archetype.diagnostic_question_ids)}\n"
            f"[bold]Symptoms:[/bold] {', '.join(archetype.symptom_keywords)}"
        )
        if templates:
            body += "\n\n[bold]Quick wins:[/bold]"
            for t in templates:
                body += f"\n  • {t.title} [dim]({t.impact_level.value})[/dim]"
        console.print(Panel(body, title=archetype.name))
        return

    console.print(f"\n[bold blue]Archetype Catalog[/bold blue] v{catalog.version}")
    console.print(f"Archetypes: {len(catalog.archetypes)} | Quick win templates: {len(catalog.quick_win_templates)}\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Questions")
    table.add_column("Keywords", justify="right")
    table.add_column("Templates", justify="right")
    for i, archetype in enumerate(catalog.archetypes, 1):
        table.add_row(
            str(i),
            archetype.name,
            ", ".join(str(q) for q in archetype.diagnostic_question_ids),
            str(len(archetype.symptom_keywords)),
            str(len(catalog.templates_for([archetype.name]))),
        )
    console.print(table)


@catalog_group.command("export")
@click.option(
    "--out", "-o",
    type=click.Path(dir_okay=False),
    default="archetypes.yaml",
    help="Output path (.yaml or .json)"
)
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
def catalog_export_cmd(out: str, force: bool):
    """Export the bundled catalog as a starting point for customization."""
    out_path = Path(out)
    if out_path.exists() and not force:
        console.print(f"[red]Error:[/red] File already exists: {out}")
        console.print("Use --force to overwrite")
        sys.exit(EXIT_ERROR)
    try:
        save_catalog(load_catalog(), out_path)
    except (InvalidCatalogError, OSError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Catalog exported: {out}")


@main.command("init-config")
@click.option(
    "--out", "-o",
    type=click.Path(),
    default="archetype-engine.yaml",
    help="Output path for the configuration file"
)
@click.option(
    "--force", "-f",
    is_flag=True,
    help="Overwrite existing config file"
)
def init_config_cmd(out: str, force: bool):
    """Generate a default engine configuration file.

    Example:
        archetype-engine init-config --out my-config.yaml
    """
    from .config import save_default_config

    out_path = Path(out)
    if out_path.exists() and not force:
        console.print(f"[red]Error:[/red] Config file already exists: {out}")
        console.print("Use --force to overwrite")
        sys.exit(EXIT_ERROR)

    try:
        save_default_config(out_path)
    except OSError as e:
        console.print(f"[red]Error creating config:[/red] {e}")
        sys.exit(EXIT_ERROR)

    console.print(f"[green]✓[/green] Config file created: {out}")
    console.print("\nThis file configures:")
    console.print("  • catalog - Which archetype catalog to load")
    console.print("  • storage - Where the CLI keeps responses and quick wins")
    console.print("  • score_bands - Green/Yellow/Red thresholds for dimension scores")
    console.print("  • logging - Log level and format")
    console.print("\nThe engine will look for config in this order:")
    console.print("  1. ARCHETYPE_ENGINE_CONFIG environment variable")
    console.print("  2. ./archetype-engine.yaml (current directory)")
    console.print("  3. ~/.config/archetype-engine/config.yaml")


# =============================================================================
# Display helpers
# =============================================================================


def display_result(result: DetectionResult, verbose: bool):
    """Display a detection result in formatted text."""
    primary = result.primary_archetype or "None"
    note = " [yellow](fallback)[/yellow]" if result.used_fallback_match else ""
    console.print(Panel(
        f"[bold]{result.user_id}[/bold]\n\n"
        f"Primary Archetype: [bold cyan]{primary}[/bold cyan]{note}\n"
        f"Archetypes: {len(result.matches)} | Quick Wins: {len(result.quick_wins)}",
        title="Detection Summary",
    ))

    if result.matches:
        table = Table(show_header=True, header_style="bold", title="Detected Archetypes")
        table.add_column("#", justify="right")
        table.add_column("Archetype", style="cyan")
        table.add_column("Dimension")
        table.add_column("Confidence", justify="right")
        table.add_column("Low answers", justify="right")
        for i, match in enumerate(result.matches, 1):
            table.add_row(
                str(i),
                match.archetype_name,
                match.source_dimension.value,
                f"{match.confidence:.2f}",
                str(match.low_scoring_count),
            )
        console.print(table)

        if verbose:
            console.print("\n[bold]Insights:[/bold]")
            for match in result.matches:
                console.print(f"\n[cyan]{match.archetype_name}[/cyan]")
                console.print(f"  {match.insight}")
                console.print(
                    f"  [dim]diagnostic {match.diagnostic_ratio:.2f} × 0.7 + "
                    f"symptom {match.symptom_ratio:.2f} × 0.3 = {match.confidence:.2f}[/dim]"
                )
    else:
        console.print("\n[green]No archetype detected: no diagnostic question scored 3 or lower.[/green]")

    console.print()
    display_quick_wins(result.quick_wins)
    if result.used_fallback_quick_wins:
        console.print("[dim]General recommendations: no archetype-specific quick wins apply.[/dim]")


def display_quick_wins(quick_wins: list[QuickWin], show_ids: bool = False):
    """Display quick wins as a table."""
    table = Table(show_header=True, header_style="bold", title="Quick Wins")
    if show_ids:
        table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Archetype")
    table.add_column("Dimension")
    table.add_column("Impact")
    table.add_column("Status")
    if show_ids:
        table.add_column("Source")

    for qw in quick_wins:
        row = [
            qw.title,
            qw.archetype or "-",
            qw.dimension.value,
            qw.impact_level.value,
            qw.status.value,
        ]
        if show_ids:
            row = [qw.id] + row + [qw.source.value]
        table.add_row(*row)
    console.print(table)


def display_assessment(summary: AssessmentSummary):
    """Display dimension scores."""
    overall_style = COLOR_STYLES[summary.overall_color]
    console.print(Panel(
        f"[bold]{summary.user_id}[/bold]\n\n"
        f"Overall: [{overall_style}]{summary.overall_score:.2f} ({summary.overall_color.value})[/{overall_style}]\n"
        f"Responses: {summary.total_responses}",
        title="Health Check",
    ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Dimension")
    table.add_column("Average", justify="right")
    table.add_column("Responses", justify="right")
    table.add_column("Status")
    for d in summary.dimensions:
        style = COLOR_STYLES[d.color]
        table.add_row(
            d.dimension.value,
            f"{d.average_score:.2f}",
            str(d.response_count),
            f"[{style}]{d.color.value}[/{style}]",
        )
    console.print(table)


def output_json(result: DetectionResult, out_path: Optional[str]):
    """Output result as JSON."""
    json_str = result.model_dump_json(indent=2)

    if out_path:
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(json_str)
    else:
        click.echo(json_str)


if __name__ == "__main__":
    main()
