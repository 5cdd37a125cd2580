"""Session Orchestrator: turns lifecycle intent into remote session calls."""

import logging
from pathlib import Path
from typing import Optional, Union

import httpx

from ocloop.clients.opencode import ApiError, OpencodeClient
from ocloop.constants import PLAN_FILE_PLACEHOLDER

logger = logging.getLogger(__name__)


class SessionCreateError(Exception):
    """Raised when the server does not hand back a new session."""

    pass


class PromptFileError(Exception):
    """Raised when the prompt template cannot be read."""

    pass


class SessionOrchestrator:
    """Creates sessions, sends the loop prompt and aborts sessions."""

    def __init__(
        self,
        client: OpencodeClient,
        prompt_file: Union[str, Path],
        plan_file: Union[str, Path],
        model: Optional[str] = None,
    ):
        self.client = client
        self.prompt_file = Path(prompt_file)
        self.plan_file = str(plan_file)
        self.model = model

    def load_prompt(self) -> str:
        """Read the prompt template with the plan placeholder substituted.

        Raises:
            PromptFileError: If the template is missing or unreadable
        """
        try:
            template = self.prompt_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise PromptFileError(f"Prompt file not found: {self.prompt_file}")
        except OSError as e:
            raise PromptFileError(f"Cannot read prompt file {self.prompt_file}: {e}")
        return self.render_prompt(template)

    def render_prompt(self, template: str) -> str:
        return template.replace(PLAN_FILE_PLACEHOLDER, self.plan_file)

    async def create_session(self) -> str:
        """Create a remote session and return its id.

        Raises:
            SessionCreateError: If the server rejects the request or returns no id
        """
        try:
            result = await self.client.create_session()
        except (ApiError, httpx.HTTPError) as e:
            logger.error(f"Failed to create session: {e}")
            raise SessionCreateError(f"Failed to create session: {e}") from e

        session_id = result.get("id") if isinstance(result, dict) else None
        if not session_id:
            logger.error(f"Session create returned no id: {result}")
            raise SessionCreateError("Failed to create session: no session id returned")

        logger.info(f"Created session: {session_id}")
        return session_id

    async def send_prompt(self, session_id: str, text: Optional[str] = None) -> None:
        """Queue the prompt on ``session_id``. Returns once the server accepts it.

        Without ``text`` the prompt template is loaded and rendered.
        """
        if text is None:
            text = self.load_prompt()
        try:
            await self.client.prompt_async(session_id, text, model=self.model)
        except Exception as e:
            logger.error(f"Failed to send prompt to session {session_id}: {e}")
            raise
        logger.info(f"Prompt sent to session {session_id} ({len(text)} chars)")

    async def abort_session(self, session_id: str, best_effort: bool = False) -> bool:
        """Abort ``session_id``.

        With ``best_effort`` failures are logged and reported as False instead
        of raised, for use while shutting down.
        """
        try:
            aborted = await self.client.abort_session(session_id)
        except Exception as e:
            if not best_effort:
                logger.error(f"Failed to abort session {session_id}: {e}")
                raise
            logger.warning(f"Ignoring abort failure for session {session_id}: {e}")
            return False
        logger.info(f"Aborted session {session_id}: {aborted}")
        return aborted

    async def fetch_model(self) -> Optional[str]:
        """Resolve the model: the configured one, else the server default."""
        if self.model:
            return self.model
        try:
            config = await self.client.get_config()
        except Exception as e:
            logger.warning(f"Could not fetch server config: {e}")
            return None
        model = config.get("model") if isinstance(config, dict) else None
        if model:
            logger.info(f"Using server default model: {model}")
        return model
