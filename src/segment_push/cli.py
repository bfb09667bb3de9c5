"""CLI for segment-push."""

import json
from typing import Optional

import structlog
import typer

from segment_push.context import PushContext
from segment_push.errors import SegmentPushError
from segment_push.lineage import LineageCoordinator
from segment_push.logging import configure_logging
from segment_push.spec import JobSpec, PushMode, load_job_spec

app = typer.Typer(
    name="segment-push",
    help="Publish segment archives to a column-store cluster",
    no_args_is_help=True,
)

logger = structlog.get_logger()


def setup(log_level: str | None = None) -> None:
    """Initialize logging."""
    configure_logging(level=log_level)


def fail(error: SegmentPushError) -> None:
    """Print a structured error and exit non-zero."""
    typer.echo(f"Error: {error.message}", err=True)
    typer.echo(json.dumps(error.to_dict(), indent=2, default=str), err=True)
    raise typer.Exit(1)


def _load(job_spec: str) -> JobSpec:
    try:
        return load_job_spec(job_spec)
    except SegmentPushError as e:
        fail(e)


# =============================================================================
# Push
# =============================================================================


@app.command("run")
def run(
    job_spec: str = typer.Argument(..., help="Path to a YAML or JSON job spec"),
    mode: Optional[PushMode] = typer.Option(None, "--mode", help="Override the push mode"),
    parallelism: Optional[int] = typer.Option(
        None,
        "--parallelism",
        min=0,
        help="Override push parallelism (0 = one partition per segment, 1 = push from the driver)",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Run a push job."""
    from segment_push.runner import run_push

    setup(log_level)
    spec = _load(job_spec)

    overrides = {}
    if mode is not None:
        overrides["mode"] = mode
    if parallelism is not None:
        overrides["parallelism"] = parallelism
    if overrides:
        spec = spec.with_push(**overrides)

    try:
        result = run_push(spec)
    except SegmentPushError as e:
        fail(e)

    typer.echo(json.dumps(result.to_dict(), indent=2))


# =============================================================================
# Lineage Commands
# =============================================================================

lineage_app = typer.Typer(help="Lineage operations")
app.add_typer(lineage_app, name="lineage")


@lineage_app.command("list")
def lineage_list(
    job_spec: str = typer.Argument(..., help="Path to a YAML or JSON job spec"),
):
    """List lineage entries of the job's table on every controller."""
    setup()
    spec = _load(job_spec)
    try:
        with PushContext.bootstrap(spec) as context:
            entries = LineageCoordinator(context).list_entries()
    except SegmentPushError as e:
        fail(e)

    for controller_uri, controller_entries in entries.items():
        typer.echo(f"\n{controller_uri}")
        typer.echo("-" * 60)
        if not controller_entries:
            typer.echo("  No lineage entries")
        for entry in controller_entries:
            typer.echo(
                f"  {entry.entry_id}  {entry.state.value:<12} "
                f"from={sorted(entry.segments_from)} to={sorted(entry.segments_to)}"
            )


@lineage_app.command("recover")
def lineage_recover(
    job_spec: str = typer.Argument(..., help="Path to a YAML or JSON job spec"),
):
    """Revert lineage entries left in progress by an interrupted push."""
    setup()
    spec = _load(job_spec)
    try:
        with PushContext.bootstrap(spec) as context:
            reverted = LineageCoordinator(context).recover_stale_entries()
    except SegmentPushError as e:
        fail(e)

    if not reverted:
        typer.echo("No stale lineage entries")
        return
    for entry in reverted:
        typer.echo(f"Reverted {entry.entry_id} (to={sorted(entry.segments_to)})")


# =============================================================================
# Segment Commands
# =============================================================================

segments_app = typer.Typer(help="Segment operations")
app.add_typer(segments_app, name="segments")


@segments_app.command("list")
def segments_list(
    job_spec: str = typer.Argument(..., help="Path to a YAML or JSON job spec"),
):
    """List live segments of the job's table on every controller."""
    setup()
    spec = _load(job_spec)
    try:
        with PushContext.bootstrap(spec) as context:
            coordinator = LineageCoordinator(context)
            live = {c.uri: sorted(coordinator.live_segments(c)) for c in context.controllers}
    except SegmentPushError as e:
        fail(e)

    for controller_uri, names in live.items():
        typer.echo(f"\n{controller_uri} ({len(names)} segments)")
        for name in names:
            typer.echo(f"  {name}")


if __name__ == "__main__":
    app()
