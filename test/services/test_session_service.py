"""Tests for the session orchestrator."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ocloop.clients.opencode import ApiError
from ocloop.services.session_service import (
    PromptFileError,
    SessionCreateError,
    SessionOrchestrator,
)


@pytest.fixture
def client():
    mock = MagicMock()
    mock.create_session = AsyncMock(return_value={"id": "ses_abc"})
    mock.prompt_async = AsyncMock(return_value=None)
    mock.abort_session = AsyncMock(return_value=True)
    mock.get_config = AsyncMock(return_value={"model": "anthropic/claude-sonnet"})
    return mock


@pytest.fixture
def prompt_file(tmp_path):
    path = tmp_path / ".loop-prompt.md"
    path.write_text("Work through {{PLAN_FILE}} one task at a time.\nRe-read {{PLAN_FILE}}.\n")
    return path


class TestPrompt:
    def test_load_substitutes_every_placeholder(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "docs/PLAN.md")
        assert orchestrator.load_prompt() == (
            "Work through docs/PLAN.md one task at a time.\nRe-read docs/PLAN.md.\n"
        )

    def test_missing_prompt_file(self, client, tmp_path):
        orchestrator = SessionOrchestrator(client, tmp_path / "missing.md", "PLAN.md")
        with pytest.raises(PromptFileError, match="Prompt file not found"):
            orchestrator.load_prompt()

    def test_unreadable_prompt_file(self, client, tmp_path):
        # A directory cannot be read as text
        orchestrator = SessionOrchestrator(client, tmp_path, "PLAN.md")
        with pytest.raises(PromptFileError, match="Cannot read prompt file"):
            orchestrator.load_prompt()


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_returns_id(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        assert await orchestrator.create_session() == "ses_abc"

    @pytest.mark.asyncio
    async def test_api_error_is_wrapped(self, client, prompt_file):
        client.create_session.side_effect = ApiError("boom", status_code=500)
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        with pytest.raises(SessionCreateError, match="boom"):
            await orchestrator.create_session()

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, client, prompt_file):
        client.create_session.side_effect = httpx.ConnectError("refused")
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        with pytest.raises(SessionCreateError):
            await orchestrator.create_session()

    @pytest.mark.asyncio
    async def test_missing_id(self, client, prompt_file):
        client.create_session.return_value = {}
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        with pytest.raises(SessionCreateError, match="no session id"):
            await orchestrator.create_session()


class TestSendPrompt:
    @pytest.mark.asyncio
    async def test_sends_rendered_template_with_model(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md", model="openai/gpt-5")
        await orchestrator.send_prompt("ses_abc")
        client.prompt_async.assert_awaited_once_with(
            "ses_abc",
            "Work through PLAN.md one task at a time.\nRe-read PLAN.md.\n",
            model="openai/gpt-5",
        )

    @pytest.mark.asyncio
    async def test_explicit_text(self, client, tmp_path):
        orchestrator = SessionOrchestrator(client, tmp_path / "missing.md", "PLAN.md")
        await orchestrator.send_prompt("ses_abc", text="hello")
        client.prompt_async.assert_awaited_once_with("ses_abc", "hello", model=None)

    @pytest.mark.asyncio
    async def test_failure_propagates(self, client, prompt_file):
        client.prompt_async.side_effect = ApiError("rejected", status_code=400)
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        with pytest.raises(ApiError):
            await orchestrator.send_prompt("ses_abc")


class TestAbortSession:
    @pytest.mark.asyncio
    async def test_abort(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        assert await orchestrator.abort_session("ses_abc") is True
        client.abort_session.assert_awaited_once_with("ses_abc")

    @pytest.mark.asyncio
    async def test_failure_raises(self, client, prompt_file):
        client.abort_session.side_effect = httpx.ConnectError("gone")
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        with pytest.raises(httpx.ConnectError):
            await orchestrator.abort_session("ses_abc")

    @pytest.mark.asyncio
    async def test_best_effort_swallows_failure(self, client, prompt_file):
        client.abort_session.side_effect = httpx.ConnectError("gone")
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        assert await orchestrator.abort_session("ses_abc", best_effort=True) is False


class TestFetchModel:
    @pytest.mark.asyncio
    async def test_configured_model_wins(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md", model="openai/gpt-5")
        assert await orchestrator.fetch_model() == "openai/gpt-5"
        client.get_config.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_default(self, client, prompt_file):
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        assert await orchestrator.fetch_model() == "anthropic/claude-sonnet"

    @pytest.mark.asyncio
    async def test_unavailable(self, client, prompt_file):
        client.get_config.side_effect = ApiError("nope", status_code=500)
        orchestrator = SessionOrchestrator(client, prompt_file, "PLAN.md")
        assert await orchestrator.fetch_model() is None
