"""Tests for the server process wrapper using stand-in shell scripts."""

import json
import stat

import pytest

from ocloop.clients.server import OpencodeServer, ServerStartError, ServerStatus


def make_script(tmp_path, body: str) -> str:
    path = tmp_path / "fake-opencode"
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


class TestCommandAndEnv:
    def test_command(self):
        server = OpencodeServer(hostname="127.0.0.1", port=4096)
        assert server.build_command() == [
            "opencode",
            "serve",
            "--hostname=127.0.0.1",
            "--port=4096",
        ]

    def test_model_passed_through_config_env(self):
        env = OpencodeServer(model="anthropic/claude").build_env()
        assert json.loads(env["OPENCODE_CONFIG_CONTENT"]) == {"model": "anthropic/claude"}

    def test_no_model_leaves_env_alone(self, monkeypatch):
        monkeypatch.delenv("OPENCODE_CONFIG_CONTENT", raising=False)
        assert "OPENCODE_CONFIG_CONTENT" not in OpencodeServer().build_env()


class TestStart:
    @pytest.mark.asyncio
    async def test_ready_on_listening_line(self, tmp_path):
        command = make_script(
            tmp_path,
            'echo "starting up"\n'
            'echo "opencode server listening on http://127.0.0.1:4999"\n'
            "exec sleep 30",
        )
        server = OpencodeServer(command=command, timeout=5.0)

        url = await server.start()
        try:
            assert url == "http://127.0.0.1:4999"
            assert server.port == 4999
            assert server.status is ServerStatus.READY
            assert await server.start() == url
        finally:
            await server.stop()

        assert server.status is ServerStatus.STOPPED
        assert server.url is None
        await server.stop()

    @pytest.mark.asyncio
    async def test_early_exit(self, tmp_path):
        command = make_script(tmp_path, 'echo "port in use"\nexit 2')
        server = OpencodeServer(command=command, timeout=5.0)

        with pytest.raises(ServerStartError) as exc_info:
            await server.start()

        assert "exited with code 2" in str(exc_info.value)
        assert "port in use" in str(exc_info.value)
        assert server.status is ServerStatus.ERROR
        assert server.error is exc_info.value

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        command = make_script(tmp_path, "exec sleep 30")
        server = OpencodeServer(command=command, timeout=0.3)

        with pytest.raises(ServerStartError, match="Timeout waiting for server"):
            await server.start()

        assert server.status is ServerStatus.ERROR
        await server.stop()

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        server = OpencodeServer(command=str(tmp_path / "not-there"))

        with pytest.raises(ServerStartError, match="Failed to spawn"):
            await server.start()

        assert server.status is ServerStatus.ERROR
