"""Event Stream Client: resilient subscription to the server event feed.

Raw feed records (``{"type": ..., "properties": {...}}``) are converted to
typed :mod:`ocloop.models.events` values, filtered against the current
session and handed to registered handlers in arrival order.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ocloop.clients.opencode import OpencodeClient
from ocloop.constants import (
    MAX_LOG_VALUE_LENGTH,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_MAX_DELAY_MS,
)
from ocloop.models.events import (
    FileDiff,
    FileEdited,
    RemoteEvent,
    SessionCreated,
    SessionDiff,
    SessionErrorEvent,
    SessionIdleEvent,
    SessionStatusChanged,
    StepFinished,
    StreamStatus,
    Todo,
    TodoUpdated,
    TokenUsage,
    ToolUsed,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[RemoteEvent], None]
RawEventHook = Callable[[Dict[str, Any]], None]
ErrorCallback = Callable[[Exception], None]

ABORTED_ERROR_NAME = "MessageAbortedError"


def backoff_delay(attempts: int) -> int:
    """Reconnect delay in milliseconds after ``attempts`` scheduled retries."""
    return min(RECONNECT_BASE_DELAY_MS * 2**attempts, RECONNECT_MAX_DELAY_MS)


def truncate_for_log(data: Any, max_value_length: int = MAX_LOG_VALUE_LENGTH) -> Any:
    """Shorten long string values anywhere inside ``data``, keeping its shape."""
    if isinstance(data, str) and len(data) > max_value_length:
        return f"{data[:max_value_length]}...[{len(data)} chars]"
    if isinstance(data, list):
        return [truncate_for_log(v, max_value_length) for v in data]
    if isinstance(data, dict):
        return {k: truncate_for_log(v, max_value_length) for k, v in data.items()}
    return data


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _session_error_details(error: Any) -> Tuple[str, bool]:
    if isinstance(error, str):
        return error, False
    if not isinstance(error, dict):
        return "Unknown error", False
    name = error.get("name")
    data = error.get("data") or {}
    message = data.get("message") if isinstance(data, dict) else None
    return message or name or "Unknown error", name == ABORTED_ERROR_NAME


def _parse_part(part: Dict[str, Any]) -> Optional[RemoteEvent]:
    part_type = part.get("type")
    session_id = part.get("sessionID")

    if part_type == "step-finish":
        tokens = _as_dict(part.get("tokens"))
        cache = _as_dict(tokens.get("cache"))
        return StepFinished(
            session_id=session_id,
            tokens=TokenUsage(
                input=tokens.get("input", 0),
                output=tokens.get("output", 0),
                reasoning=tokens.get("reasoning", 0),
                cache_read=cache.get("read", 0),
                cache_write=cache.get("write", 0),
            ),
        )

    if part_type == "tool":
        state = _as_dict(part.get("state"))
        # Only report a tool call once, when it has finished
        if state.get("status") != "completed":
            return None
        return ToolUsed(
            session_id=session_id,
            tool=part.get("tool") or state.get("tool") or "unknown",
            input=state.get("input") or {},
        )

    return None


def parse_event(raw: Dict[str, Any]) -> Optional[RemoteEvent]:
    """Convert a raw feed record into a typed event.

    Returns None for event types the harness does not consume and for records
    missing the fields their type requires.
    """
    event_type = raw.get("type")
    props = _as_dict(raw.get("properties"))

    try:
        if event_type == "session.created":
            session_id = _as_dict(props.get("info")).get("id")
            if not session_id:
                return None
            return SessionCreated(session_id=session_id)

        if event_type == "session.idle":
            return SessionIdleEvent(session_id=props.get("sessionID"))

        if event_type == "session.error":
            message, aborted = _session_error_details(props.get("error"))
            return SessionErrorEvent(
                session_id=props.get("sessionID"), message=message, aborted=aborted
            )

        if event_type == "todo.updated":
            todos = [Todo(**todo) for todo in props.get("todos") or []]
            return TodoUpdated(session_id=props.get("sessionID"), todos=todos)

        if event_type == "file.edited":
            return FileEdited(path=props.get("file"))

        if event_type == "session.status":
            status = props.get("status")
            if isinstance(status, dict):
                status = status.get("type")
            return SessionStatusChanged(session_id=props.get("sessionID"), status=status)

        if event_type == "message.part.updated":
            return _parse_part(_as_dict(props.get("part")))

        if event_type == "session.diff":
            diffs = [FileDiff(**diff) for diff in props.get("diff") or []]
            return SessionDiff(session_id=props.get("sessionID"), diffs=diffs)
    except (ValidationError, TypeError, AttributeError) as e:
        logger.warning(f"Ignoring malformed {event_type} event: {e}")
        return None

    return None


class EventStreamClient:
    """Keeps one live subscription to ``/event`` and dispatches typed events.

    Backoff attempts only reset on :meth:`reconnect`, never on a successful
    connection.
    """

    def __init__(
        self,
        url_provider: Callable[[], Optional[str]],
        session_id: Optional[Callable[[], Optional[str]]] = None,
        directory: Optional[str] = None,
        client_factory: Callable[..., OpencodeClient] = OpencodeClient,
        on_error: Optional[ErrorCallback] = None,
        on_any_event: Optional[RawEventHook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._url_provider = url_provider
        self._session_id = session_id
        self.directory = directory
        self._client_factory = client_factory
        self._on_error = on_error
        self._on_any_event = on_any_event
        self._sleep = sleep

        self._handlers: List[EventHandler] = []
        self._task: Optional[asyncio.Task] = None
        # Bumped on every new connection attempt; older attempts stop writing status
        self._generation = 0
        self._should_reconnect = True

        self.status = StreamStatus.DISCONNECTED
        self.last_error: Optional[Exception] = None
        self.attempts = 0

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        """Start a connection unless one is already connecting or connected."""
        if self.status in (StreamStatus.CONNECTING, StreamStatus.CONNECTED):
            return

        url = self._url_provider()
        if not url:
            logger.warning("Cannot connect event stream: URL is empty")
            return

        self._cancel_task()
        self._generation += 1
        self.status = StreamStatus.CONNECTING
        self.last_error = None
        logger.info(f"Connecting event stream to {url} (directory={self.directory})")
        self._task = asyncio.create_task(self._run(self._generation, url))

    def disconnect(self) -> None:
        """Cancel the subscription and stop automatic reconnection."""
        logger.info("Disconnecting event stream")
        self._should_reconnect = False
        self._generation += 1
        self._cancel_task()
        self.status = StreamStatus.DISCONNECTED

    async def aclose(self) -> None:
        """Disconnect and wait for the cancelled subscription to unwind."""
        task = self._task
        self.disconnect()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def reconnect(self) -> None:
        """Reset backoff and force a fresh connection."""
        self.attempts = 0
        self._should_reconnect = True
        self._generation += 1
        self._cancel_task()
        self.status = StreamStatus.DISCONNECTED
        self.connect()

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _set_status(self, generation: int, status: StreamStatus) -> None:
        if generation == self._generation:
            self.status = status

    async def _run(self, generation: int, url: str) -> None:
        while True:
            await self._connect_once(generation, url)

            if not self._should_reconnect or generation != self._generation:
                return

            delay = backoff_delay(self.attempts)
            self.attempts += 1
            logger.info(f"Event stream reconnecting in {delay}ms (attempt {self.attempts})")
            await self._sleep(delay / 1000)

            if not self._should_reconnect or generation != self._generation:
                return
            self._set_status(generation, StreamStatus.CONNECTING)
            url = self._url_provider() or url

    async def _connect_once(self, generation: int, url: str) -> None:
        client = self._client_factory(url, directory=self.directory)
        try:
            async for raw in client.events(
                on_open=lambda: self._on_open(generation)
            ):
                if generation != self._generation:
                    return
                self.process_event(raw)
            logger.info("Event stream ended")
            self._set_status(generation, StreamStatus.DISCONNECTED)
        except asyncio.CancelledError:
            self._set_status(generation, StreamStatus.DISCONNECTED)
            raise
        except Exception as e:
            if generation != self._generation:
                return
            self.last_error = e
            self.status = StreamStatus.ERROR
            logger.error(f"Event stream connection error: {e}")
            if self._on_error is not None:
                self._on_error(e)
        finally:
            await client.close()

    def _on_open(self, generation: int) -> None:
        self._set_status(generation, StreamStatus.CONNECTED)
        logger.info("Event stream connected")

    # -------------------------------------------------------------------------
    # Event processing
    # -------------------------------------------------------------------------

    def process_event(self, raw: Dict[str, Any]) -> None:
        """Classify, filter and dispatch one raw feed record."""
        current = self._session_id() if self._session_id else None
        logger.debug(
            f"Event received: type={raw.get('type')} session={current} "
            f"data={truncate_for_log(raw.get('properties'))}"
        )

        if self._on_any_event is not None:
            try:
                self._on_any_event(raw)
            except Exception as e:
                logger.error(f"Raw event hook failed: {e}")

        event = parse_event(raw)
        if event is None:
            return
        if self._is_filtered(event, current):
            return

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.kind}: {e}")

    @staticmethod
    def _is_filtered(event: RemoteEvent, current: Optional[str]) -> bool:
        if not current or not event.session_scoped:
            return False
        if isinstance(event, SessionErrorEvent):
            # Errors without a session id apply to every session
            return bool(event.session_id) and event.session_id != current
        return event.session_id != current
