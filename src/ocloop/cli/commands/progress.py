"""Progress command: summarize the plan without running the harness."""

from pathlib import Path

import click

from ocloop.constants import DEFAULT_PLAN_FILE
from ocloop.services.plan_tracker import PlanTracker


@click.command()
@click.option(
    "--plan",
    "plan_file",
    default=DEFAULT_PLAN_FILE,
    type=click.Path(path_type=Path),
    help=f"Path to plan file (default: {DEFAULT_PLAN_FILE})",
)
def progress(plan_file):
    """Show task counts, the current task and the completion summary."""
    tracker = PlanTracker(plan_file)
    try:
        counts = tracker.progress()
    except OSError as e:
        raise click.ClickException(f"Cannot read plan file {plan_file}: {e}")

    click.echo(
        f"{counts.completed}/{counts.total - counts.manual} tasks complete "
        f"({counts.percent_complete}%)"
    )
    click.echo(
        f"Pending: {counts.pending}  Manual: {counts.manual}  Blocked: {counts.blocked}"
    )

    current = tracker.current_task()
    if current:
        click.echo(f"Current task: {current}")

    summary = tracker.completion_summary()
    if summary is not None:
        click.echo(f"Plan complete: {summary.raw_content}")
        for task in summary.manual_tasks:
            click.echo(f"  manual: {task}")
        for task in summary.blocked_tasks:
            click.echo(f"  blocked: {task}")
