"""Attached Session Channel: one ``opencode attach`` process at a time."""

import asyncio
import logging
import os
from typing import Callable, Dict, List, Optional, Union

from ocloop.clients.pty_process import PtyProcess
from ocloop.constants import (
    ATTACH_COLORTERM,
    ATTACH_TERM,
    DEFAULT_COLS,
    DEFAULT_ROWS,
    OPENCODE_COMMAND,
)
from ocloop.models.channel import ChannelStatus

logger = logging.getLogger(__name__)


def build_attach_command(
    server_url: str, session_id: str, command: str = OPENCODE_COMMAND
) -> List[str]:
    return [command, "attach", server_url, "--session", session_id]


def build_attach_env() -> Dict[str, str]:
    env = dict(os.environ)
    env["TERM"] = ATTACH_TERM
    env["COLORTERM"] = ATTACH_COLORTERM
    return env


class AttachedSessionChannel:
    """Owns the pseudo-terminal process bound to the current remote session.

    Failures never raise into the caller: they set status ``error`` and go
    through ``on_error``. Only natural process exits reach ``on_exit``.
    """

    def __init__(
        self,
        server_url: Callable[[], Optional[str]],
        on_data: Callable[[bytes], None],
        on_exit: Optional[Callable[[str, Optional[int], Optional[int]], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        process_factory: Callable[..., PtyProcess] = PtyProcess,
        cwd: Optional[str] = None,
    ):
        self._server_url = server_url
        self._on_data = on_data
        self._on_exit = on_exit
        self._on_error = on_error
        self.cols = cols
        self.rows = rows
        self._process_factory = process_factory
        self.cwd = cwd

        self._process: Optional[PtyProcess] = None
        self._pending: Optional[PtyProcess] = None
        self._start_task: Optional[asyncio.Task] = None
        self.status = ChannelStatus.IDLE
        self.session_id: Optional[str] = None
        self.error: Optional[Exception] = None

    @property
    def is_running(self) -> bool:
        return self.status is ChannelStatus.RUNNING

    @property
    def is_active(self) -> bool:
        """True while a process is starting or running."""
        return self.status in (ChannelStatus.SPAWNING, ChannelStatus.RUNNING)

    def spawn(self, session_id: str) -> None:
        """Attach to ``session_id``, replacing any existing channel.

        The process starts in the background and the status stays
        ``spawning`` until it is up. Must be called from the event loop.
        """
        self.kill()
        url = self._server_url()
        if not url:
            self._fail(RuntimeError("Cannot spawn attached session: server URL not available"))
            return

        self.status = ChannelStatus.SPAWNING
        self.error = None
        self.session_id = session_id

        argv = build_attach_command(url, session_id)
        process = self._process_factory(
            argv, cols=self.cols, rows=self.rows, cwd=self.cwd or os.getcwd(), env=build_attach_env()
        )
        self._pending = process
        self._start_task = asyncio.create_task(self._start(process, session_id))

    async def _start(self, process: PtyProcess, session_id: str) -> None:
        try:
            await process.start(
                on_data=self._on_data,
                on_exit=lambda code, sig: self._handle_exit(process, session_id, code, sig),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if process is self._pending:
                self._pending = None
                self.session_id = None
                self._fail(e)
            return

        if process is not self._pending:
            # Killed or replaced while starting
            process.kill()
            return
        self._pending = None
        self._process = process
        self.status = ChannelStatus.RUNNING
        logger.info(f"Attached channel running for session {session_id}")

    def _handle_exit(
        self,
        process: PtyProcess,
        session_id: str,
        exit_code: Optional[int],
        signal_number: Optional[int],
    ) -> None:
        if process is not self._process:
            return
        logger.info(
            f"Attached channel for session {session_id} exited "
            f"(code={exit_code}, signal={signal_number})"
        )
        self._process = None
        self.status = ChannelStatus.EXITED
        if self._on_exit is not None:
            self._on_exit(session_id, exit_code, signal_number)

    def _fail(self, error: Exception) -> None:
        logger.error(f"Attached channel error: {error}")
        self.error = error
        self.status = ChannelStatus.ERROR
        if self._on_error is not None:
            self._on_error(error)

    def write(self, data: Union[str, bytes]) -> None:
        if self._process is None or not self.is_running:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            self._process.write(data)
        except OSError as e:
            logger.warning(f"Write to attached channel failed: {e}")

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        if self._process is None or not self.is_running:
            return
        try:
            self._process.resize(cols, rows)
        except OSError as e:
            logger.warning(f"Resize of attached channel failed: {e}")

    def kill(self) -> None:
        """Stop the current process, if any. Its exit is not reported."""
        process = self._process
        if process is None and self._pending is None:
            return
        self._process = None
        # A process still starting is stopped by _start once it is up
        self._pending = None
        if process is not None:
            try:
                process.kill()
            except OSError as e:
                logger.debug(f"Kill of attached channel ignored: {e}")
        logger.info(f"Attached channel for session {self.session_id} killed")
        self.session_id = None
        self.status = ChannelStatus.IDLE
