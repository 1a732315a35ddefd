"""Connection state machine for the report stream.

Transition table:

    DISCONNECTED --connect--> CONNECTING
    CONNECTING   --opened---> OPEN
    CONNECTING   --failed---> DISCONNECTED
    OPEN         --closed---> DISCONNECTED

Any other (state, event) pair is a programming error and raises
InvalidTransitionError. Listeners are notified after every transition; the
reporting client uses this to start/stop the push timer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


class ConnectionEvent(str, Enum):
    CONNECT = "connect"
    OPENED = "opened"
    FAILED = "failed"
    CLOSED = "closed"


TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, ConnectionEvent.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, ConnectionEvent.OPENED): ConnectionState.OPEN,
    (ConnectionState.CONNECTING, ConnectionEvent.FAILED): ConnectionState.DISCONNECTED,
    (ConnectionState.OPEN, ConnectionEvent.CLOSED): ConnectionState.DISCONNECTED,
}

Listener = Callable[[ConnectionState, ConnectionState], None]


class InvalidTransitionError(RuntimeError):
    """Raised for an event that is not allowed in the current state."""


class ConnectionStateMachine:
    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def add_listener(self, listener: Listener) -> None:
        """Register ``listener(old_state, new_state)``, called after each transition."""
        self._listeners.append(listener)

    def fire(self, event: ConnectionEvent) -> ConnectionState:
        """Apply ``event`` and return the new state.

        Raises:
            InvalidTransitionError: If the event is not valid in the current state
        """
        key = (self._state, event)
        if key not in TRANSITIONS:
            raise InvalidTransitionError(
                f"Event {event.value!r} not allowed in state {self._state.value!r}"
            )
        old, self._state = self._state, TRANSITIONS[key]
        logger.debug(f"Connection state {old.value} -> {self._state.value} ({event.value})")
        for listener in self._listeners:
            listener(old, self._state)
        return self._state
