"""Pseudo-terminal child process driven from the asyncio event loop."""

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
# Seconds between SIGHUP and SIGKILL
KILL_GRACE_PERIOD = 2.0

DataCallback = Callable[[bytes], None]
# (exit code, signal number); exactly one is set
ExitCallback = Callable[[Optional[int], Optional[int]], None]


def set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """One child process whose stdio is the slave end of a fresh pty."""

    def __init__(
        self,
        argv: List[str],
        cols: int,
        rows: int,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        kill_grace_period: float = KILL_GRACE_PERIOD,
    ):
        self.argv = argv
        self.cols = cols
        self.rows = rows
        self.cwd = cwd
        self.env = env
        self.kill_grace_period = kill_grace_period
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._wait_task: Optional[asyncio.Task] = None
        self._kill_task: Optional[asyncio.Task] = None
        self._killed = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    async def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Spawn the child.

        Raises:
            OSError: If the pty cannot be opened or the command cannot be run
        """
        loop = asyncio.get_running_loop()
        master, slave = pty.openpty()
        os.set_blocking(master, False)
        try:
            set_window_size(slave, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            os.close(slave)

        self._master_fd = master
        self._on_data = on_data
        loop.add_reader(master, self._read_ready)
        self._wait_task = asyncio.create_task(self._wait_exit(on_exit))
        logger.debug(f"Spawned pty process {self._proc.pid}: {' '.join(self.argv)}")

    def _read_ready(self) -> bool:
        if self._master_fd is None:
            return False
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return False
        except OSError:
            # EIO once the child side is closed
            data = b""
        if not data:
            self._close_master()
            return False
        self._on_data(data)
        return True

    async def _wait_exit(self, on_exit: ExitCallback) -> None:
        returncode = await self._proc.wait()
        # Deliver whatever the child wrote before exiting
        while self._read_ready():
            pass
        self._close_master()
        if self._killed:
            return
        if returncode < 0:
            on_exit(None, -returncode)
        else:
            on_exit(returncode, None)

    def _close_master(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        self._master_fd = None
        try:
            asyncio.get_running_loop().remove_reader(fd)
        except RuntimeError:
            # No running loop left to deregister from
            pass
        os.close(fd)

    def write(self, data: bytes) -> None:
        if self._master_fd is None:
            return
        os.write(self._master_fd, data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        if self._master_fd is None:
            return
        set_window_size(self._master_fd, cols, rows)

    def kill(self) -> None:
        """Terminate the child without reporting its exit.

        Sends SIGHUP to the process group and SIGKILL if it is still alive
        after the grace period.
        """
        self._killed = True
        self._close_master()
        if self._proc is None or self._proc.returncode is not None:
            return
        if not self._signal_group(signal.SIGHUP):
            return
        if self._kill_task is None:
            self._kill_task = asyncio.create_task(self._escalate())

    def _signal_group(self, signum: int) -> bool:
        try:
            os.killpg(self._proc.pid, signum)
        except ProcessLookupError:
            return False
        return True

    async def _escalate(self) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._wait_task), self.kill_grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Pty process {self._proc.pid} ignored SIGHUP, killing it")
            self._signal_group(signal.SIGKILL)
        except asyncio.CancelledError:
            # Cancelled on loop shutdown
            if self._proc.returncode is None:
                self._signal_group(signal.SIGKILL)
            raise
