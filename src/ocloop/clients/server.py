"""Lifecycle of the local ``opencode serve`` process."""

import asyncio
import json
import logging
import os
import re
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import urlparse

from ocloop.constants import (
    OPENCODE_COMMAND,
    SERVER_HOSTNAME,
    SERVER_PORT,
    SERVER_STARTUP_TIMEOUT,
)

logger = logging.getLogger(__name__)

LISTENING_PATTERN = re.compile(r"opencode server listening on\s+(https?://\S+)")


class ServerStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"


class ServerStartError(Exception):
    """Raised when the server process fails to report readiness."""

    pass


class OpencodeServer:
    """Spawns ``opencode serve`` and waits until it is listening."""

    def __init__(
        self,
        hostname: str = SERVER_HOSTNAME,
        port: int = SERVER_PORT,
        timeout: float = SERVER_STARTUP_TIMEOUT,
        model: Optional[str] = None,
        command: str = OPENCODE_COMMAND,
    ):
        self.hostname = hostname
        self.requested_port = port
        self.timeout = timeout
        self.model = model
        self.command = command

        self.status = ServerStatus.STOPPED
        self.url: Optional[str] = None
        self.port: Optional[int] = None
        self.error: Optional[Exception] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._output: List[str] = []

    def build_command(self) -> List[str]:
        return [
            self.command,
            "serve",
            f"--hostname={self.hostname}",
            f"--port={self.requested_port}",
        ]

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.model:
            env["OPENCODE_CONFIG_CONTENT"] = json.dumps({"model": self.model})
        return env

    async def start(self) -> str:
        """Start the server and return its URL.

        Raises:
            ServerStartError: If the process cannot be spawned, exits early or
                does not report a listening URL within the timeout
        """
        if self.status in (ServerStatus.STARTING, ServerStatus.READY):
            if self.url:
                return self.url

        self.status = ServerStatus.STARTING
        self.error = None
        self._output = []
        argv = self.build_command()
        logger.info(f"Starting server: {' '.join(argv)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.build_env(),
            )
        except OSError as e:
            error = ServerStartError(f"Failed to spawn {self.command}: {e}")
            self._fail(error)
            raise error from e

        try:
            url = await asyncio.wait_for(self._wait_for_url(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self._terminate()
            error = ServerStartError(f"Timeout waiting for server to start after {self.timeout}s")
            self._fail(error)
            raise error from e
        except ServerStartError as e:
            await self._terminate()
            self._fail(e)
            raise

        self.url = url
        parsed = urlparse(url)
        self.port = parsed.port
        self.status = ServerStatus.READY
        # Keep reading so the child never blocks on a full pipe
        self._drain_task = asyncio.create_task(self._drain())
        logger.info(f"Server ready at {url}")
        return url

    async def _wait_for_url(self) -> str:
        assert self._process is not None and self._process.stdout is not None
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                code = await self._process.wait()
                output = "".join(self._output).strip()
                message = f"Server exited with code {code}"
                if output:
                    message += f"\nServer output: {output}"
                raise ServerStartError(message)
            line = raw.decode("utf-8", errors="replace")
            self._output.append(line)
            match = LISTENING_PATTERN.search(line)
            if match:
                return match.group(1)

    async def _drain(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                break
            logger.debug(f"server: {raw.decode('utf-8', errors='replace').rstrip()}")

    def _fail(self, error: Exception) -> None:
        logger.error(f"Server failed to start: {error}")
        self.error = error
        self.status = ServerStatus.ERROR
        self.url = None
        self.port = None

    async def _terminate(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Server did not exit after SIGTERM, killing it")
            process.kill()
            await process.wait()

    async def stop(self) -> None:
        """Stop the server. Safe to call more than once."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        await self._terminate()
        if self.status is not ServerStatus.STOPPED:
            logger.info("Server stopped")
        self.status = ServerStatus.STOPPED
        self.url = None
        self.port = None
