"""Run command: start the opencode server and drive the iteration loop."""

import asyncio
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from ocloop.cli.keyboard import KeyboardInput
from ocloop.config import ConfigError, HarnessConfig, load_config
from ocloop.constants import DEFAULT_PLAN_FILE, DEFAULT_PROMPT_FILE, OPENCODE_COMMAND
from ocloop.models.lifecycle import (
    Complete,
    Debug,
    Error,
    InteractionMode,
    LifecycleState,
    Paused,
    Pausing,
    Ready,
    Running,
    Starting,
    Stopped,
    Stopping,
)
from ocloop.services.harness import Harness
from ocloop.utils.format import format_duration
from ocloop.utils.logging import setup_logging

PLAN_FILE_GUIDANCE = """
OCLoop requires a plan file with tasks to execute.
Create one with a task list, for example:

  ## Backlog
  - [ ] Task one description
  - [ ] Task two description
"""

PROMPT_FILE_GUIDANCE = f"""
OCLoop requires a prompt file (default: {DEFAULT_PROMPT_FILE}).
This file contains the prompt sent to opencode for each iteration.
Use {{{{PLAN_FILE}}}} where the plan file path should appear.
"""


def validate_prerequisites(config: HarnessConfig, cwd: Path) -> None:
    """Fail with guidance when the plan or prompt file is missing."""
    if shutil.which(OPENCODE_COMMAND) is None:
        raise click.ClickException(
            f"'{OPENCODE_COMMAND}' was not found on PATH. Install opencode first."
        )
    if config.debug:
        return
    if not (cwd / config.plan_file).is_file():
        raise click.ClickException(f"Plan file not found: {config.plan_file}\n{PLAN_FILE_GUIDANCE}")
    if not (cwd / config.prompt_file).is_file():
        raise click.ClickException(
            f"Prompt file not found: {config.prompt_file}\n{PROMPT_FILE_GUIDANCE}"
        )


def describe_state(state: LifecycleState, harness: Harness) -> Optional[str]:
    """One-line status for a lifecycle state, or None for transient states."""
    if isinstance(state, Starting):
        return "Starting opencode server..."
    if isinstance(state, Ready):
        return "Ready. Press [s] to start, [q] to quit."
    if isinstance(state, Running):
        if not state.session_id:
            return None
        line = f"Iteration {state.iteration} running (session {state.session_id[:8]})"
        progress = harness.progress
        if progress is not None:
            line += f" - {progress.completed}/{progress.total - progress.manual} tasks"
        if harness.current_task:
            line += f" - {harness.current_task}"
        return line
    if isinstance(state, Pausing):
        return f"Pausing after iteration {state.iteration} finishes..."
    if isinstance(state, Paused):
        return f"Paused after iteration {state.iteration}. Press [space] to resume."
    if isinstance(state, Complete):
        total = format_duration(harness.timer.total_active_time()).strip()
        lines = [
            f"Plan complete after {state.iterations} iterations ({total}).",
            state.summary.raw_content or "",
        ]
        lines += [f"  manual: {task}" for task in state.summary.manual_tasks]
        lines += [f"  blocked: {task}" for task in state.summary.blocked_tasks]
        lines.append("Press [q] to quit.")
        return "\n".join(line for line in lines if line)
    if isinstance(state, Error):
        hint = "Press [r] to retry, [q] to quit." if state.recoverable else "Press [q] to quit."
        return f"Error ({state.source.value}): {state.message}\n{hint}"
    if isinstance(state, Debug):
        if state.session_id:
            return f"Debug session {state.session_id[:8]}. Ctrl+\\ to attach, [n] for a new session."
        return "Debug mode. Press [n] for a new session."
    if isinstance(state, Stopping):
        return "Stopping..."
    if isinstance(state, Stopped):
        return "Stopped."
    return None


async def run_harness(config: HarnessConfig, cwd: Path) -> int:
    """Run the harness until quit. Returns the process exit code."""
    loop = asyncio.get_running_loop()
    keyboard: Optional[KeyboardInput] = None

    def write_output(data: bytes) -> None:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()

    def on_mode_change(mode: InteractionMode) -> None:
        attached = mode is InteractionMode.ATTACHED
        if keyboard is not None:
            keyboard.set_raw(attached)
        if attached:
            size = shutil.get_terminal_size()
            harness.resize(size.columns, size.lines)
        else:
            click.echo("\nDetached.")
            echo_state(harness.controller.state, harness.controller.state)

    harness = Harness(config, on_output=write_output, on_mode_change=on_mode_change, cwd=cwd)
    keyboard = KeyboardInput(harness)

    def echo_state(prev: LifecycleState, cur: LifecycleState) -> None:
        if harness.controller.is_attached:
            return
        line = describe_state(cur, harness)
        if line:
            click.echo(line)

    def on_resize() -> None:
        size = shutil.get_terminal_size()
        harness.resize(size.columns, size.lines)

    harness.controller.subscribe(echo_state)
    echo_state(harness.controller.state, harness.controller.state)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, harness.quit)
    loop.add_signal_handler(signal.SIGWINCH, on_resize)
    if keyboard.start() and harness.controller.is_attached:
        on_mode_change(InteractionMode.ATTACHED)
    try:
        await harness.run()
    finally:
        keyboard.stop()
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGWINCH):
            loop.remove_signal_handler(sig)

    return 1 if isinstance(harness.controller.state, Error) else 0


@click.command()
@click.option("--port", "-p", type=int, help="Server port (default: 4096)")
@click.option("--model", "-m", help="Model to use, as provider/model")
@click.option(
    "--run",
    "-r",
    "run_immediately",
    is_flag=True,
    default=None,
    help="Start iterations immediately (default: wait for [s])",
)
@click.option(
    "--debug",
    "-d",
    is_flag=True,
    default=None,
    help="Debug mode: no plan file validation, manual sessions",
)
@click.option(
    "--attach", "-a", is_flag=True, default=None, help="Start attached to each session"
)
@click.option("--prompt", "prompt_file", help=f"Path to loop prompt file (default: {DEFAULT_PROMPT_FILE})")
@click.option("--plan", "plan_file", help=f"Path to plan file (default: {DEFAULT_PLAN_FILE})")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="JSON config file (default: ~/.config/ocloop/ocloop.json)",
)
@click.option("--verbose", is_flag=True, default=None, help="Log debug detail to the log file")
def run(port, model, run_immediately, debug, attach, prompt_file, plan_file, config_path, verbose):
    """Run the iteration loop against a local opencode server."""
    try:
        config = load_config(
            config_path,
            overrides={
                "port": port,
                "model": model,
                "run": run_immediately,
                "debug": debug,
                "attach": attach,
                "prompt_file": prompt_file,
                "plan_file": plan_file,
                "verbose": verbose,
            },
        )
    except ConfigError as e:
        raise click.ClickException(str(e))

    cwd = Path(os.path.realpath(os.getcwd()))
    validate_prerequisites(config, cwd)

    log_path = setup_logging(
        log_file=config.log_file,
        debug=config.debug,
        verbose=config.verbose,
        model=config.model or None,
        cwd=str(cwd),
    )
    if log_path is None:
        click.echo(f"Warning: logging to {config.log_file} is disabled", err=True)

    try:
        exit_code = asyncio.run(run_harness(config, cwd))
    except Exception as e:
        raise click.ClickException(str(e))
    sys.exit(exit_code)
