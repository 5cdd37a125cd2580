"""Lifecycle controller: the pure transition function and its state holder.

The reducer never performs side effects. Callers subscribe to transitions on
the controller and issue remote calls themselves, so the reducer stays a pure
function of (state, action).
"""

import logging
from typing import Callable, List, Optional, Tuple

from ocloop.models.lifecycle import (
    Complete,
    Debug,
    Error,
    ErrorOccurred,
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
    Stopped,
    Stopping,
    TogglePause,
)

logger = logging.getLogger(__name__)

TransitionListener = Callable[[LifecycleState, LifecycleState], None]

# Error preempts everything except terminal states
_ERROR_PREEMPTIBLE = (Starting, Ready, Running, Pausing, Paused, Debug)
_QUITTABLE = (Ready, Running, Paused, Pausing, Debug)
_COMPLETABLE = (Ready, Running, Paused)


def transition(state: LifecycleState, action: LifecycleAction) -> LifecycleState:
    """Return the state that follows ``state`` under ``action``.

    Pairs that are not valid in context return ``state`` unchanged. Such races
    are expected (a key press racing an async callback) and are not errors.
    """
    if isinstance(action, ServerReady):
        if isinstance(state, Starting):
            return Ready()
        return state

    if isinstance(action, ServerReadyDebug):
        if isinstance(state, Starting):
            return Debug(session_id="")
        return state

    if isinstance(action, NewSession):
        if isinstance(state, Debug):
            return Debug(session_id=action.session_id)
        return state

    if isinstance(action, Start):
        if isinstance(state, Ready):
            return Running(iteration=0, session_id="")
        return state

    if isinstance(action, IterationStarted):
        if isinstance(state, Running) and not state.session_id:
            return Running(iteration=state.iteration + 1, session_id=action.session_id)
        # Resuming from pause
        if isinstance(state, Paused):
            return Running(iteration=state.iteration + 1, session_id=action.session_id)
        return state

    if isinstance(action, TogglePause):
        if isinstance(state, Running):
            if not state.session_id:
                # Nothing in flight to wait for
                return Paused(iteration=state.iteration)
            return Pausing(iteration=state.iteration, session_id=state.session_id)
        if isinstance(state, Paused):
            # Caller must dispatch IterationStarted to resume work
            return Running(iteration=state.iteration, session_id="")
        return state

    if isinstance(action, SessionIdle):
        if isinstance(state, Running):
            return Running(iteration=state.iteration, session_id="")
        if isinstance(state, Pausing):
            return Paused(iteration=state.iteration)
        if isinstance(state, Debug):
            return Debug(session_id="")
        return state

    if isinstance(action, PlanComplete):
        if isinstance(state, _COMPLETABLE):
            iterations = state.iteration if isinstance(state, (Running, Paused)) else 0
            return Complete(iterations=iterations, summary=action.summary)
        return state

    if isinstance(action, ErrorOccurred):
        if isinstance(state, _ERROR_PREEMPTIBLE):
            return Error(
                source=action.source,
                message=action.message,
                recoverable=action.recoverable,
            )
        return state

    if isinstance(action, Retry):
        if isinstance(state, Error) and state.recoverable:
            return Starting()
        return state

    if isinstance(action, Quit):
        if isinstance(state, _QUITTABLE):
            return Stopping()
        return state

    if isinstance(action, ShutdownComplete):
        if isinstance(state, Stopping):
            return Stopped()
        return state

    return state


def session_id_of(state: LifecycleState) -> Optional[str]:
    """Session id of the in-flight remote session, if any."""
    if isinstance(state, (Running, Pausing, Debug)) and state.session_id:
        return state.session_id
    return None


def iteration_of(state: LifecycleState) -> int:
    if isinstance(state, (Running, Pausing, Paused)):
        return state.iteration
    if isinstance(state, Complete):
        return state.iterations
    return 0


class LifecycleController:
    """Single authority over the current lifecycle state.

    Holds the state, applies actions through :func:`transition` and notifies
    listeners of every change. The interaction mode is tracked separately from
    the lifecycle phase.
    """

    def __init__(self, initial: Optional[LifecycleState] = None):
        self._state: LifecycleState = initial if initial is not None else Starting()
        self._interaction_mode = InteractionMode.DETACHED
        self._listeners: List[TransitionListener] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def dispatch(self, action: LifecycleAction) -> Tuple[LifecycleState, LifecycleState]:
        """Apply ``action`` and return ``(previous, current)``.

        Listeners are only notified when the state actually changes.
        """
        previous = self._state
        current = transition(previous, action)
        if current == previous:
            logger.debug(f"Ignored {action.type} in state {previous.type}")
            return previous, current

        self._state = current
        logger.info(f"State {previous.type} -> {current.type} on {action.type}")
        for listener in list(self._listeners):
            listener(previous, current)
        return previous, current

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> Optional[str]:
        return session_id_of(self._state)

    @property
    def iteration(self) -> int:
        return iteration_of(self._state)

    @property
    def is_ready(self) -> bool:
        return isinstance(self._state, Ready)

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, (Running, Pausing))

    @property
    def is_paused(self) -> bool:
        return isinstance(self._state, Paused)

    @property
    def is_pausing(self) -> bool:
        return isinstance(self._state, Pausing)

    @property
    def is_error(self) -> bool:
        return isinstance(self._state, Error)

    @property
    def is_debug(self) -> bool:
        return isinstance(self._state, Debug)

    @property
    def can_start(self) -> bool:
        return isinstance(self._state, Ready)

    @property
    def can_pause(self) -> bool:
        return isinstance(self._state, (Running, Paused))

    @property
    def can_quit(self) -> bool:
        return isinstance(self._state, (Ready, Running, Paused, Debug, Error))

    @property
    def can_retry(self) -> bool:
        return isinstance(self._state, Error) and self._state.recoverable

    # -------------------------------------------------------------------------
    # Interaction mode
    # -------------------------------------------------------------------------

    @property
    def interaction_mode(self) -> InteractionMode:
        return self._interaction_mode

    @property
    def is_attached(self) -> bool:
        return self._interaction_mode is InteractionMode.ATTACHED

    def attach(self) -> None:
        self._interaction_mode = InteractionMode.ATTACHED

    def detach(self) -> None:
        self._interaction_mode = InteractionMode.DETACHED

    def toggle_interaction_mode(self) -> InteractionMode:
        if self.is_attached:
            self.detach()
        else:
            self.attach()
        return self._interaction_mode
