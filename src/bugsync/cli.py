"""CLI for bugsync.

Convention-based: discovers .bugsync/ by walking up from cwd.

Usage:
    bugsync init --workspace=web --organization=acme   # Initialize .bugsync/ in cwd
    bugsync dashboard --data bugs.json                 # Serve the dashboard API
    bugsync metrics bugs.json                          # Metrics for an export
    bugsync metrics bugs.json --previous last.json     # ... with period-over-period trends
    bugsync filter bugs.json --status=Open --tag=ui    # Filter an export
"""

from __future__ import annotations

import json as json_mod
import sys
from pathlib import Path

import click

from bugsync import __version__
from bugsync.config import BUGSYNC_DIR_NAME, CONFIG_FILENAME, TrackerConfig, write_config
from bugsync.context import VALID_ACCOUNT_KINDS
from bugsync.filters import VALID_DUE_BUCKETS, VALID_GROUP_BY, apply_filters, group_bugs, normalize_filter_spec
from bugsync.metrics import compute_metrics, compute_metrics_with_trends
from bugsync.models import Bug, Sprint
from bugsync.store import StoreDocument, order_documents, read_seed_file
from bugsync.subscriptions import BUG_ORDER


def _load_export(path: Path) -> tuple[list[Bug], list[Sprint]]:
    """Read a JSON export and return its bugs (newest first) and sprints."""
    try:
        seed = read_seed_file(path)
    except (OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    docs = order_documents([StoreDocument(id=k, data=v) for k, v in seed["bugs"].items()], BUG_ORDER)
    bugs = [Bug.from_document(d.id, d.data) for d in docs]
    sprints = [Sprint.from_document(k, v) for k, v in seed["sprints"].items()]
    return bugs, sprints


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="bugsync")
def cli() -> None:
    """Bugsync — live bug-tracking sync and mutation engine."""


@cli.command()
@click.option("--workspace", default=None, help="Workspace id (default: directory name)")
@click.option("--organization", default="", help="Organization id (organization accounts)")
@click.option(
    "--account-kind",
    type=click.Choice(sorted(VALID_ACCOUNT_KINDS)),
    default="organization",
    help="Account kind (default: organization)",
)
def init(workspace: str | None, organization: str, account_kind: str) -> None:
    """Initialize .bugsync/ in the current directory."""
    cwd = Path.cwd()
    bugsync_dir = cwd / BUGSYNC_DIR_NAME

    if bugsync_dir.exists():
        click.echo(f"{BUGSYNC_DIR_NAME}/ already exists in {cwd}")
        return

    bugsync_dir.mkdir()
    config = TrackerConfig(
        workspace=workspace or cwd.name,
        organization=organization,
        account_kind=account_kind,  # type: ignore[arg-type]
    )
    write_config(bugsync_dir, config.to_dict())

    click.echo(f"Initialized {BUGSYNC_DIR_NAME}/ in {cwd}")
    click.echo(f"  Workspace: {config.workspace}")
    click.echo(f"  Account: {config.account_kind}")
    if account_kind == "organization" and not organization:
        click.echo(f"\nSet \"organization\" in {BUGSYNC_DIR_NAME}/{CONFIG_FILENAME} before syncing.")


@cli.command()
@click.option("--port", default=8377, type=int, help="Server port (default 8377)")
@click.option(
    "--data",
    "data_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON export to seed the in-process store",
)
@click.option("--user", default="local", help="User id for the dashboard session (default: local)")
@click.option("--role", default="admin", help="Role for the dashboard session (default: admin)")
def dashboard(port: int, data_file: Path | None, user: str, role: str) -> None:
    """Launch the dashboard API (requires bugsync[dashboard])."""
    try:
        from bugsync.dashboard import main as dashboard_main
    except ImportError:
        click.echo('Dashboard requires extra dependencies. Install with: pip install "bugsync[dashboard]"', err=True)
        sys.exit(1)
    try:
        dashboard_main(port=port, data_file=data_file, user=user, role=role)
    except FileNotFoundError:
        click.echo(f"No {BUGSYNC_DIR_NAME}/ found. Run 'bugsync init' first.", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("export_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--previous",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Earlier export to compute trends against",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def metrics(export_file: Path, previous: Path | None, as_json: bool) -> None:
    """Show bug metrics for a JSON export."""
    bugs, _ = _load_export(export_file)
    if previous is not None:
        prior, _ = _load_export(previous)
        data = compute_metrics_with_trends(bugs, prior)
    else:
        data = compute_metrics(bugs)

    if as_json:
        click.echo(json_mod.dumps(data, indent=2, default=str))
        return

    click.echo(f"Total: {data['total']}  Active: {data['active']}  Resolved: {data['resolved']}")
    click.echo(f"Resolution rate: {data['resolution_rate']}%")
    click.echo(f"Avg resolution: {data['avg_resolution_hours']}h")
    click.echo(f"Avg completeness: {data['avg_completeness']}%  Reproducible: {data['reproduction_rate']}%")
    click.echo(f"Evidence coverage: {data['evidence']['coverage_pct']}%")
    click.echo("\nSeverity:")
    for severity, count in sorted(data["by_severity"].items()):
        click.echo(f"  {severity}: {count}")
    click.echo("\nStatus:")
    for status, count in sorted(data["by_status"].items()):
        click.echo(f"  {status}: {count}")
    trends = data.get("trends")
    if trends:
        click.echo("\nTrends:")
        for key, change in trends.items():
            click.echo(f"  {key}: {change:+d}%")


@cli.command("filter")
@click.argument("export_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--status", default=None, help="Status to match")
@click.option("--severity", default=None, help="Severity to match")
@click.option("--assignee", default=None, help="Assignee id or email")
@click.option("--reporter", default=None, help="Reporter id or email")
@click.option("--environment", default=None, help="Environment to match")
@click.option("--sprint", default=None, help="Sprint id")
@click.option("--category", default=None, help="Category to match")
@click.option("--frequency", default=None, help="Frequency to match")
@click.option("--tag", "-t", multiple=True, help="Tag (repeatable; any match)")
@click.option("--search", "-s", default=None, help="Free-text search over title, description and id")
@click.option("--due", type=click.Choice(sorted(VALID_DUE_BUCKETS)), default=None, help="Due date bucket")
@click.option("--group-by", type=click.Choice(sorted(VALID_GROUP_BY)), default="none", help="Group results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def filter_cmd(
    export_file: Path,
    status: str | None,
    severity: str | None,
    assignee: str | None,
    reporter: str | None,
    environment: str | None,
    sprint: str | None,
    category: str | None,
    frequency: str | None,
    tag: tuple[str, ...],
    search: str | None,
    due: str | None,
    group_by: str,
    as_json: bool,
) -> None:
    """Filter the bugs in a JSON export."""
    raw = {
        "status": status,
        "severity": severity,
        "assignee": assignee,
        "reporter": reporter,
        "environment": environment,
        "sprint": sprint,
        "category": category,
        "frequency": frequency,
        "tags": list(tag),
        "search": search,
        "due": due,
    }
    try:
        spec = normalize_filter_spec(raw)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    bugs, sprints = _load_export(export_file)
    short_id_length = TrackerConfig.load().short_id_length
    matched = apply_filters(bugs, spec, short_id_length=short_id_length)
    groups = group_bugs(matched, group_by, sprints=sprints)

    if as_json:
        payload = [{"key": g.key, "label": g.label, "bugs": [b.to_dict() for b in g.bugs]} for g in groups]
        click.echo(json_mod.dumps(payload if group_by != "none" else payload[0]["bugs"], indent=2, default=str))
        return

    if not matched:
        click.echo("No bugs match.")
        return
    for group in groups:
        if group_by != "none":
            click.echo(f"{group.label} ({group.count})")
        for bug in group.bugs:
            assignee_label = bug.assignee or "-"
            label = f"[{bug.status}/{bug.severity}]"
            click.echo(f"  {bug.short_id(short_id_length)}  {label}  {bug.title}  @{assignee_label}")
    click.echo(f"\n{len(matched)} of {len(bugs)} bug(s)")


if __name__ == "__main__":
    cli()
