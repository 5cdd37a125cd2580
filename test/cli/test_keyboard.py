"""Tests for operator key handling."""

from unittest.mock import MagicMock

import pytest

from ocloop.cli.keyboard import KeyboardInput, command_for_key


class TestCommandForKey:
    @pytest.mark.parametrize(
        "key,command",
        [
            ("s", "start"),
            ("S", "start"),
            (" ", "toggle_pause"),
            ("r", "retry"),
            ("q", "quit"),
            ("n", "new_debug_session"),
            ("\x1c", "toggle_attach"),
            ("x", None),
        ],
    )
    def test_mapping(self, key, command):
        assert command_for_key(key) == command


@pytest.fixture
def harness():
    mock = MagicMock()
    mock.controller.is_attached = False

    def toggle_attach():
        mock.controller.is_attached = not mock.controller.is_attached

    mock.toggle_attach.side_effect = toggle_attach
    return mock


class TestKeyboardInput:
    def test_detached_keys_drive_harness(self, harness):
        keyboard = KeyboardInput(harness, fd=0)

        keyboard.handle(b"sx q")

        harness.start.assert_called_once()
        harness.toggle_pause.assert_called_once()
        harness.quit.assert_called_once()
        harness.forward_input.assert_not_called()

    def test_attached_forwards_bytes(self, harness):
        harness.controller.is_attached = True
        keyboard = KeyboardInput(harness, fd=0)

        keyboard.handle(b"q\x03")

        harness.forward_input.assert_called_once_with(b"q\x03")
        harness.quit.assert_not_called()

    def test_toggle_detaches_and_processes_rest(self, harness):
        harness.controller.is_attached = True
        keyboard = KeyboardInput(harness, fd=0)

        keyboard.handle(b"ls\x1cs")

        harness.forward_input.assert_called_once_with(b"ls")
        harness.toggle_attach.assert_called_once()
        harness.start.assert_called_once()

    def test_toggle_attaches_and_forwards_rest(self, harness):
        keyboard = KeyboardInput(harness, fd=0)

        keyboard.handle(b"\x1cq")

        harness.toggle_attach.assert_called_once()
        harness.forward_input.assert_called_once_with("q")
        harness.quit.assert_not_called()

    def test_start_without_terminal(self, harness, tmp_path):
        with open(tmp_path / "input.txt", "w") as f:
            keyboard = KeyboardInput(harness, fd=f.fileno())
            assert keyboard.start() is False
            keyboard.stop()
