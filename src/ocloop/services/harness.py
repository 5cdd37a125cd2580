"""Harness control loop.

The loop owns a single inbox. Operator commands, event stream events and
attached channel exits are queued there and applied one at a time. Side
effects are issued by reacting to lifecycle transitions, never from inside
the reducer. Transition listeners do not dispatch: follow-up actions are
either queued or performed by background tasks once the listener returns.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Coroutine, Optional, Set, Union

from pydantic import BaseModel, ConfigDict

from ocloop.clients.opencode import OpencodeClient
from ocloop.clients.server import OpencodeServer, ServerStartError
from ocloop.config import HarnessConfig
from ocloop.models.activity import ActivityEventType
from ocloop.models.events import (
    FileEdited,
    RemoteEvent,
    SessionCreated,
    SessionDiff,
    SessionErrorEvent,
    SessionIdleEvent,
    SessionStatusChanged,
    StepFinished,
    TodoUpdated,
    ToolUsed,
)
from ocloop.models.lifecycle import (
    Complete,
    Debug,
    Error,
    ErrorOccurred,
    ErrorSource,
    InteractionMode,
    IterationStarted,
    LifecycleAction,
    LifecycleState,
    NewSession,
    Paused,
    Pausing,
    PlanComplete,
    Quit,
    Ready,
    Retry,
    Running,
    ServerReady,
    ServerReadyDebug,
    SessionIdle,
    ShutdownComplete,
    Start,
    Starting,
    TogglePause,
)
from ocloop.models.plan import PlanProgress
from ocloop.services.activity_log import ActivityLog
from ocloop.services.attached_channel import AttachedSessionChannel
from ocloop.services.event_stream import EventStreamClient
from ocloop.services.iteration_timer import IterationTimer
from ocloop.services.lifecycle import LifecycleController
from ocloop.services.plan_tracker import (
    PlanTracker,
    build_completion_summary,
    parse_plan_complete,
)
from ocloop.services.session_service import SessionOrchestrator
from ocloop.services.session_stats import SessionStats
from ocloop.utils.format import get_tool_preview, truncate_text
from ocloop.utils.logging import log_iteration_end, log_iteration_start
from ocloop.utils.project import ensure_gitignore

logger = logging.getLogger(__name__)


class ChannelExited(BaseModel):
    """The attached process for ``session_id`` exited on its own."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    exit_code: Optional[int] = None
    signal: Optional[int] = None


class NewDebugSession(BaseModel):
    """Operator request for a fresh session in debug mode."""

    model_config = ConfigDict(frozen=True)


InboxItem = Union[LifecycleAction, RemoteEvent, ChannelExited, NewDebugSession]

_REMOTE_EVENT_TYPES = (
    SessionCreated,
    SessionIdleEvent,
    SessionErrorEvent,
    TodoUpdated,
    FileEdited,
    SessionStatusChanged,
    StepFinished,
    SessionDiff,
    ToolUsed,
)


class Harness:
    """Composes the lifecycle controller with the server, event stream,
    session orchestrator and attached channel into one control loop."""

    def __init__(
        self,
        config: HarnessConfig,
        server: Optional[OpencodeServer] = None,
        client_factory: Callable[..., OpencodeClient] = OpencodeClient,
        event_stream_factory: Callable[..., EventStreamClient] = EventStreamClient,
        channel_factory: Callable[..., AttachedSessionChannel] = AttachedSessionChannel,
        timer: Optional[IterationTimer] = None,
        on_output: Optional[Callable[[bytes], None]] = None,
        on_mode_change: Optional[Callable[[InteractionMode], None]] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
        cwd: Optional[Path] = None,
    ):
        self.config = config
        self.cwd = cwd or Path(os.getcwd())
        self.controller = LifecycleController()
        self.server = server or OpencodeServer(
            hostname=config.hostname,
            port=config.port,
            timeout=config.startup_timeout,
            model=config.model or None,
        )
        self._client_factory = client_factory
        self.client: Optional[OpencodeClient] = None
        self.sessions: Optional[SessionOrchestrator] = None

        self.events = event_stream_factory(
            url_provider=lambda: self.server.url,
            session_id=lambda: self.controller.session_id,
            directory=str(self.cwd),
        )
        self.events.add_handler(self.submit)

        self.channel = channel_factory(
            server_url=lambda: self.server.url,
            on_data=self._on_channel_data,
            on_exit=self._on_channel_exit,
            on_error=self._on_channel_error,
            cols=config.channel_cols,
            rows=config.channel_rows,
            cwd=str(self.cwd),
        )

        self.plan = PlanTracker(self.cwd / config.plan_file)
        self.timer = timer or IterationTimer()
        self.activity = ActivityLog()
        self.stats = SessionStats()

        self.model: Optional[str] = config.model or None
        self.progress: Optional[PlanProgress] = None
        self.plan_error: Optional[Exception] = None
        self.current_task: Optional[str] = None

        self._on_output = on_output
        self._on_mode_change = on_mode_change
        self._on_shutdown = on_shutdown

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._iteration_task: Optional[asyncio.Task] = None
        self._debug_task: Optional[asyncio.Task] = None
        self._initialized = False
        self.stopped = asyncio.Event()

        if config.attach:
            self.controller.attach()
        self.controller.subscribe(self._on_transition)

    # -------------------------------------------------------------------------
    # Operator commands
    # -------------------------------------------------------------------------

    def submit(self, item: InboxItem) -> None:
        self._inbox.put_nowait(item)

    def start(self) -> None:
        self.submit(Start())

    def toggle_pause(self) -> None:
        self.submit(TogglePause())

    def retry(self) -> None:
        self.submit(Retry())

    def quit(self) -> None:
        self.submit(Quit())

    def new_debug_session(self) -> None:
        self.submit(NewDebugSession())

    def toggle_attach(self) -> InteractionMode:
        """Switch between forwarding keystrokes to the session and not."""
        mode = self.controller.toggle_interaction_mode()
        if mode is InteractionMode.ATTACHED:
            session_id = self.controller.session_id
            if session_id and not (
                self.channel.is_active and self.channel.session_id == session_id
            ):
                self.channel.spawn(session_id)
        logger.info(f"Interaction mode: {mode.value}")
        self._notify_mode(mode)
        return mode

    def forward_input(self, data: Union[str, bytes]) -> None:
        if self.controller.is_attached:
            self.channel.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self.channel.resize(cols, rows)

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Acquire the server and process the inbox until quit."""
        self._spawn(self._acquire_server())
        while True:
            item = await self._inbox.get()
            if isinstance(item, Quit):
                await self._shutdown()
                return
            try:
                self._handle(item)
            except Exception as e:
                logger.error(f"Failed to handle {type(item).__name__}: {e}")

    def _handle(self, item: InboxItem) -> None:
        if isinstance(item, ChannelExited):
            self._handle_channel_exit(item)
        elif isinstance(item, NewDebugSession):
            self._handle_new_debug_session()
        elif isinstance(item, _REMOTE_EVENT_TYPES):
            self._handle_event(item)
        else:
            self.controller.dispatch(item)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _fail(self, source: ErrorSource, message: str, recoverable: bool = True) -> None:
        logger.error(f"[{source.value}] {message}")
        self.activity.add(ActivityEventType.ERROR, message)
        self.controller.dispatch(
            ErrorOccurred(source=source, message=message, recoverable=recoverable)
        )

    # -------------------------------------------------------------------------
    # Transition reactions
    # -------------------------------------------------------------------------

    def _on_transition(self, prev: LifecycleState, cur: LifecycleState) -> None:
        if isinstance(prev, Starting) and isinstance(cur, (Ready, Debug)):
            self._on_server_ready()

        if isinstance(prev, Error) and isinstance(cur, Starting):
            self._spawn(self._acquire_server())

        if (
            isinstance(cur, Running)
            and cur.session_id
            and (isinstance(prev, Paused) or (isinstance(prev, Running) and not prev.session_id))
        ):
            self.timer.start_iteration()
            log_iteration_start(cur.iteration)
            self.refresh_current_task()

        if isinstance(prev, Running) and isinstance(cur, Pausing):
            self.timer.pause()

        if isinstance(prev, Paused) and isinstance(cur, Running):
            self.timer.resume()

        if (
            isinstance(prev, Running)
            and prev.session_id
            and isinstance(cur, Running)
            and not cur.session_id
        ) or (isinstance(prev, Pausing) and isinstance(cur, Paused)):
            duration = self.timer.end_iteration()
            log_iteration_end(cur.iteration)
            logger.info(f"Iteration {cur.iteration} active for {duration / 1000:.1f}s")
            self.channel.kill()

        if isinstance(prev, (Running, Pausing)) and isinstance(cur, Error):
            if prev.session_id:
                self.timer.end_iteration()
                log_iteration_end(prev.iteration)
            self.channel.kill()

        if isinstance(cur, Running) and not cur.session_id:
            self._maybe_start_iteration()

        if isinstance(cur, Complete):
            logger.info(
                f"Plan complete after {cur.iterations} iterations: {cur.summary.raw_content}"
            )

    def _on_server_ready(self) -> None:
        self.events.reconnect()
        if not self.model:
            self._spawn(self._resolve_model())

        if self._initialized:
            return
        self._initialized = True

        if self.config.debug:
            self._handle_new_debug_session()
            return

        try:
            ensure_gitignore(self.cwd)
        except OSError as e:
            logger.warning(f"Could not update .gitignore: {e}")
        if self.config.run:
            self.submit(Start())

    async def _acquire_server(self) -> None:
        try:
            url = await self.server.start()
        except ServerStartError as e:
            self._fail(ErrorSource.SERVER, str(e))
            return

        if self.client is not None:
            await self.client.close()
        self.client = self._client_factory(url, directory=str(self.cwd))
        self.sessions = SessionOrchestrator(
            self.client,
            prompt_file=self.cwd / self.config.prompt_file,
            plan_file=self.config.plan_file,
            model=self.config.model or None,
        )
        self.controller.dispatch(ServerReadyDebug() if self.config.debug else ServerReady())

    async def _resolve_model(self) -> None:
        if self.sessions is None:
            return
        model = await self.sessions.fetch_model()
        if model:
            self.model = model

    # -------------------------------------------------------------------------
    # Iterations
    # -------------------------------------------------------------------------

    def _maybe_start_iteration(self) -> None:
        if self._iteration_task is not None:
            return
        state = self.controller.state
        if not (isinstance(state, Running) and not state.session_id):
            return
        self._iteration_task = self._spawn(self._run_iteration_start())

    async def _run_iteration_start(self) -> None:
        try:
            await self._start_iteration()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(ErrorSource.API, f"Iteration start failed: {e}")
        finally:
            self._iteration_task = None
        # An idle may have arrived while the previous start was in flight
        self._maybe_start_iteration()

    async def _start_iteration(self) -> None:
        try:
            content = self.plan.read()
        except (OSError, UnicodeDecodeError) as e:
            self._fail(ErrorSource.PLAN, f"Cannot read plan file {self.plan.plan_path}: {e}")
            return

        sentinel = parse_plan_complete(content)
        if sentinel is not None:
            self.controller.dispatch(
                PlanComplete(summary=build_completion_summary(content, sentinel))
            )
            return

        if self.sessions is None:
            self._fail(ErrorSource.API, "Cannot start iteration: API client not available")
            return
        try:
            session_id = await self.sessions.create_session()

            state = self.controller.state
            if not (isinstance(state, Running) and not state.session_id):
                logger.warning(
                    f"State changed to {state.type} while creating session {session_id}, aborting it"
                )
                await self.sessions.abort_session(session_id, best_effort=True)
                return

            self.controller.dispatch(IterationStarted(session_id=session_id))
            if self.controller.is_attached:
                self.channel.spawn(session_id)
            await self.sessions.send_prompt(session_id)
            self.refresh_plan()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(ErrorSource.API, f"Failed to start iteration: {e}")

    def refresh_plan(self) -> Optional[PlanProgress]:
        if self.config.debug:
            return None
        try:
            self.progress = self.plan.progress()
            self.plan_error = None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read plan file: {e}")
            self.plan_error = e
        return self.progress

    def refresh_current_task(self) -> None:
        if self.config.debug:
            return
        task = self.plan.current_task()
        if task:
            self.current_task = task

    # -------------------------------------------------------------------------
    # Debug sessions
    # -------------------------------------------------------------------------

    def _handle_new_debug_session(self) -> None:
        if not self.controller.is_debug:
            return
        if self._debug_task is not None and not self._debug_task.done():
            return
        self.channel.kill()
        self._debug_task = self._spawn(self._create_debug_session())

    async def _create_debug_session(self) -> None:
        if self.sessions is None:
            self._fail(ErrorSource.API, "Cannot create debug session: API client not available")
            return
        try:
            session_id = await self.sessions.create_session()
        except Exception as e:
            self._fail(ErrorSource.API, f"Failed to create debug session: {e}")
            return

        self.controller.dispatch(NewSession(session_id=session_id))
        self.activity.add(ActivityEventType.SESSION_START, f"Debug session: {session_id[:8]}")
        if self.controller.is_attached:
            self.channel.spawn(session_id)

    # -------------------------------------------------------------------------
    # Remote events
    # -------------------------------------------------------------------------

    def _handle_event(self, event: RemoteEvent) -> None:
        if isinstance(event, SessionCreated):
            self.activity.add(
                ActivityEventType.SESSION_START, f"Session started: {event.session_id[:8]}"
            )
            self.stats.reset()

        elif isinstance(event, SessionErrorEvent):
            if event.aborted:
                self.activity.add(ActivityEventType.TASK, "Session aborted by user")
                if isinstance(self.controller.state, Running):
                    self.controller.dispatch(TogglePause())
            else:
                self.activity.add(ActivityEventType.ERROR, f"Session error: {event.message}")

        elif isinstance(event, SessionIdleEvent):
            current = self.controller.session_id
            if current and event.session_id == current:
                self.controller.dispatch(SessionIdle())
                self.activity.add(ActivityEventType.SESSION_IDLE, "Session idle")

        elif isinstance(event, TodoUpdated):
            in_progress = next((t for t in event.todos if t.status == "in_progress"), None)
            if in_progress is not None:
                self.current_task = in_progress.content
                self.activity.add(ActivityEventType.TASK, in_progress.content)

        elif isinstance(event, FileEdited):
            self.activity.add(ActivityEventType.FILE_EDIT, event.path)
            if self.plan.is_plan_file(self.cwd / event.path):
                self.refresh_plan()
                self.refresh_current_task()

        elif isinstance(event, StepFinished):
            self.stats.add_tokens(event.tokens)

        elif isinstance(event, SessionDiff):
            self.stats.set_diff(event.diffs)

        elif isinstance(event, ToolUsed):
            preview = get_tool_preview(event.tool, event.input)
            if event.tool == "read":
                self.activity.add(ActivityEventType.FILE_READ, preview)
            else:
                self.activity.add(
                    ActivityEventType.TOOL_USE, f"{event.tool}: {truncate_text(preview, 80)}"
                )

        elif isinstance(event, SessionStatusChanged):
            logger.debug(f"Session {event.session_id} status: {event.status}")

    # -------------------------------------------------------------------------
    # Attached channel callbacks
    # -------------------------------------------------------------------------

    def _on_channel_data(self, data: bytes) -> None:
        if self.controller.is_attached and self._on_output is not None:
            self._on_output(data)

    def _on_channel_exit(
        self, session_id: str, exit_code: Optional[int], signal: Optional[int]
    ) -> None:
        self.submit(ChannelExited(session_id=session_id, exit_code=exit_code, signal=signal))

    def _on_channel_error(self, error: Exception) -> None:
        message = f"Attached session failed: {error}"
        if self.controller.is_debug:
            self._fail(ErrorSource.PTY, message)
        else:
            self.activity.add(ActivityEventType.ERROR, message)

    def _handle_channel_exit(self, item: ChannelExited) -> None:
        logger.info(
            f"Attached session {item.session_id} exited "
            f"(code={item.exit_code}, signal={item.signal})"
        )
        if self.controller.is_attached:
            self.controller.detach()
            self._notify_mode(InteractionMode.DETACHED)

        state = self.controller.state
        if isinstance(state, (Running, Pausing)) and state.session_id == item.session_id:
            self.controller.dispatch(SessionIdle())

    def _notify_mode(self, mode: InteractionMode) -> None:
        if self._on_mode_change is not None:
            self._on_mode_change(mode)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def _shutdown(self) -> None:
        session_id = self.controller.session_id
        logger.info(f"Quit requested (session={session_id})")
        self.controller.dispatch(Quit())

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self.events.aclose()
        except Exception as e:
            logger.error(f"Failed to disconnect event stream: {e}")

        self.channel.kill()

        if session_id and self.sessions is not None:
            await self.sessions.abort_session(session_id, best_effort=True)

        try:
            await self.server.stop()
        except Exception as e:
            logger.error(f"Failed to stop server: {e}")

        if self.client is not None:
            try:
                await self.client.close()
            except Exception as e:
                logger.error(f"Failed to close API client: {e}")

        self.controller.dispatch(ShutdownComplete())
        if self._on_shutdown is not None:
            self._on_shutdown()
        self.stopped.set()
