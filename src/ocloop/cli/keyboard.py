"""Operator keyboard input for the harness.

Detached, single keys map to harness commands. Attached, every byte is
forwarded to the session except the attach toggle key.
"""

import asyncio
import logging
import os
import sys
import termios
import tty
from typing import Optional

from ocloop.constants import ATTACH_TOGGLE_KEY

logger = logging.getLogger(__name__)

TOGGLE_BYTE = ATTACH_TOGGLE_KEY.encode()

KEY_COMMANDS = {
    "s": "start",
    " ": "toggle_pause",
    "r": "retry",
    "q": "quit",
    "n": "new_debug_session",
    ATTACH_TOGGLE_KEY: "toggle_attach",
}


def command_for_key(key: str) -> Optional[str]:
    return KEY_COMMANDS.get(key if key == " " else key.lower())


class KeyboardInput:
    """Reads the operator's terminal from the event loop and drives a harness."""

    def __init__(self, harness, fd: Optional[int] = None):
        self.harness = harness
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._saved_attrs = None
        self._reading = False

    def start(self) -> bool:
        """Put the terminal in cbreak mode and start reading.

        Returns False (and reads nothing) when input is not a terminal.
        """
        if not os.isatty(self.fd):
            logger.info("Standard input is not a terminal, keyboard controls disabled")
            return False
        self._saved_attrs = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        asyncio.get_running_loop().add_reader(self.fd, self._read_ready)
        self._reading = True
        return True

    def set_raw(self, raw: bool) -> None:
        """Raw while attached so control keys reach the session."""
        if self._saved_attrs is None:
            return
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
        if raw:
            tty.setraw(self.fd)
        else:
            tty.setcbreak(self.fd)

    def stop(self) -> None:
        if self._reading:
            asyncio.get_running_loop().remove_reader(self.fd)
            self._reading = False
        if self._saved_attrs is not None:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    def _read_ready(self) -> None:
        try:
            data = os.read(self.fd, 1024)
        except OSError as e:
            logger.warning(f"Keyboard read failed: {e}")
            return
        if data:
            self.handle(data)

    def handle(self, data: bytes) -> None:
        if self.harness.controller.is_attached:
            index = data.find(TOGGLE_BYTE)
            if index == -1:
                self.harness.forward_input(data)
                return
            if index > 0:
                self.harness.forward_input(data[:index])
            self.harness.toggle_attach()
            rest = data[index + len(TOGGLE_BYTE) :]
            if rest:
                self.handle(rest)
            return

        text = data.decode("utf-8", errors="ignore")
        for position, key in enumerate(text):
            command = command_for_key(key)
            if command is None:
                continue
            getattr(self.harness, command)()
            if command == "toggle_attach" and self.harness.controller.is_attached:
                # Whatever follows belongs to the session now
                rest = text[position + 1 :]
                if rest:
                    self.harness.forward_input(rest)
                return
