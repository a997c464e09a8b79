"""Per-concern state machines with lock-protected transitions."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from enum import Enum
from typing import Generic, TypeVar

from .exceptions import InvalidTransitionError


class TurnState(str, Enum):
    """Lifecycle of the single request/response turn of a session."""

    IDLE = "IDLE"
    STREAMING = "STREAMING"
    PERSISTING = "PERSISTING"


class PlaybackState(str, Enum):
    """Lifecycle of the single active speech clip."""

    IDLE = "IDLE"
    REQUESTING = "REQUESTING"
    DECODING = "DECODING"
    PLAYING = "PLAYING"


TURN_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.STREAMING}),
    TurnState.STREAMING: frozenset({TurnState.PERSISTING, TurnState.IDLE}),
    TurnState.PERSISTING: frozenset({TurnState.IDLE}),
}

PLAYBACK_TRANSITIONS: dict[PlaybackState, frozenset[PlaybackState]] = {
    PlaybackState.IDLE: frozenset({PlaybackState.REQUESTING}),
    PlaybackState.REQUESTING: frozenset({PlaybackState.DECODING, PlaybackState.IDLE}),
    PlaybackState.DECODING: frozenset({PlaybackState.PLAYING, PlaybackState.IDLE}),
    PlaybackState.PLAYING: frozenset({PlaybackState.IDLE}),
}

S = TypeVar("S", bound=Enum)


class StateManager(Generic[S]):
    """Manage declared state transitions with async lock semantics."""

    def __init__(self, initial: S, transitions: Mapping[S, frozenset[S]]) -> None:
        self._lock = asyncio.Lock()
        self._state = initial
        self._transitions = transitions

    @property
    def current(self) -> S:
        """Return the current state without locking (for display and tests)."""
        return self._state

    async def get_state(self) -> S:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    def _check(self, new_state: S) -> None:
        if new_state == self._state:
            return
        if new_state not in self._transitions.get(self._state, frozenset()):
            raise InvalidTransitionError(
                f"Illegal transition {self._state.value} -> {new_state.value}"
            )

    async def transition_to(self, new_state: S) -> S:
        """Transition to a new state and return it."""
        async with self._lock:
            self._check(new_state)
            self._state = new_state
            return self._state

    async def transition_if(self, expected_state: S, new_state: S) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._check(new_state)
            self._state = new_state
            return True


def turn_state_manager() -> StateManager[TurnState]:
    return StateManager(TurnState.IDLE, TURN_TRANSITIONS)


def playback_state_manager() -> StateManager[PlaybackState]:
    return StateManager(PlaybackState.IDLE, PLAYBACK_TRANSITIONS)
