"""Main CLI entry point for OCLoop."""

import click

from ocloop.cli.commands.progress import progress
from ocloop.cli.commands.run import run


@click.group()
def cli():
    """OCLoop - drive opencode through a plan, one session per iteration."""
    pass


cli.add_command(run)
cli.add_command(progress)


if __name__ == "__main__":
    cli()
