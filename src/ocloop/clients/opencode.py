"""Async HTTP client for the opencode server API."""

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from ocloop.constants import API_TIMEOUT

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when the server rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def parse_model(model: Optional[str]) -> Optional[Dict[str, str]]:
    """Split ``provider/model`` into the API's model selector.

    The model id may itself contain slashes; only the first one separates the
    provider. Returns None for an empty or provider-less value.
    """
    if not model or "/" not in model:
        return None
    provider_id, model_id = model.split("/", 1)
    if not provider_id or not model_id:
        return None
    return {"providerID": provider_id, "modelID": model_id}


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data payload of each server-sent event record.

    Multiple ``data:`` lines in one record are joined with newlines. Comment
    lines and other fields (``event:``, ``id:``, ``retry:``) are ignored.
    """
    data_lines: List[str] = []
    async for line in lines:
        if line == "":
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)


def decode_event(payload: str) -> Optional[Dict[str, Any]]:
    """Decode one JSON payload, or None if it is not a JSON object."""
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning(f"Skipping undecodable event payload: {payload[:200]}")
        return None
    return event if isinstance(event, dict) else None


class OpencodeClient:
    """Thin wrapper over the opencode REST endpoints used by the harness."""

    def __init__(
        self,
        base_url: str,
        directory: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=API_TIMEOUT, transport=transport
        )

    def _params(self) -> Dict[str, str]:
        return {"directory": self.directory} if self.directory else {}

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.is_error:
            raise ApiError(
                f"{what} failed with status {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    async def create_session(self) -> Dict[str, Any]:
        r = await self._client.post("/session", params=self._params(), json={})
        self._check(r, "Session create")
        return r.json()

    async def prompt_async(
        self, session_id: str, text: str, model: Optional[str] = None
    ) -> None:
        body: Dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        selector = parse_model(model)
        if selector:
            body["model"] = selector
        r = await self._client.post(
            f"/session/{session_id}/prompt_async", params=self._params(), json=body
        )
        self._check(r, "Prompt")

    async def abort_session(self, session_id: str) -> bool:
        r = await self._client.post(f"/session/{session_id}/abort", params=self._params())
        self._check(r, "Session abort")
        return bool(r.json()) if r.content else True

    async def get_config(self) -> Dict[str, Any]:
        r = await self._client.get("/config", params=self._params())
        self._check(r, "Config fetch")
        return r.json()

    async def events(
        self, on_open: Optional[Callable[[], None]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream decoded events from ``GET /event`` until the server closes it.

        ``on_open`` is called once the server has accepted the subscription.
        """
        async with self._client.stream(
            "GET",
            "/event",
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(API_TIMEOUT, read=None),
        ) as response:
            if response.is_error:
                await response.aread()
                self._check(response, "Event subscription")
            if on_open is not None:
                on_open()
            async for payload in iter_sse_data(response.aiter_lines()):
                event = decode_event(payload)
                if event is not None:
                    yield event

    async def close(self) -> None:
        await self._client.aclose()
