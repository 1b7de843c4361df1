from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class SyncState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    FETCHING = "fetching"
    PUSHING = "pushing"
    COMMITTING = "committing"
    BACKOFF = "backoff"
    DISABLED = "disabled"


class SyncEvent(str, Enum):
    TICK = "tick"
    SCHEMA_CACHED = "schema_cached"
    SCHEMA_RESOLVED = "schema_resolved"
    BATCH_READY = "batch_ready"
    CAUGHT_UP = "caught_up"
    SCHEMA_MISMATCH = "schema_mismatch"
    ACKED = "acked"
    COMMITTED = "committed"
    STALE_CURSOR = "stale_cursor"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    RETRY = "retry"
    REENABLE = "reenable"


class InvalidTransition(Exception):
    def __init__(self, state: SyncState, event: SyncEvent) -> None:
        super().__init__(f"No transition from {state.value} on {event.value}")
        self.state = state
        self.event = event


_WORKING_STATES = (SyncState.PROBING, SyncState.FETCHING, SyncState.PUSHING, SyncState.COMMITTING)

TRANSITIONS: Dict[Tuple[SyncState, SyncEvent], SyncState] = {
    (SyncState.IDLE, SyncEvent.TICK): SyncState.PROBING,
    (SyncState.IDLE, SyncEvent.SCHEMA_CACHED): SyncState.FETCHING,
    (SyncState.PROBING, SyncEvent.SCHEMA_RESOLVED): SyncState.FETCHING,
    (SyncState.FETCHING, SyncEvent.BATCH_READY): SyncState.PUSHING,
    (SyncState.FETCHING, SyncEvent.CAUGHT_UP): SyncState.IDLE,
    (SyncState.FETCHING, SyncEvent.SCHEMA_MISMATCH): SyncState.PROBING,
    (SyncState.PUSHING, SyncEvent.ACKED): SyncState.COMMITTING,
    (SyncState.COMMITTING, SyncEvent.COMMITTED): SyncState.IDLE,
    (SyncState.COMMITTING, SyncEvent.STALE_CURSOR): SyncState.IDLE,
    (SyncState.DISABLED, SyncEvent.REENABLE): SyncState.IDLE,
    **{(state, SyncEvent.TRANSIENT_FAILURE): SyncState.BACKOFF for state in _WORKING_STATES},
    **{(state, SyncEvent.PERMANENT_FAILURE): SyncState.DISABLED for state in (*_WORKING_STATES, SyncState.IDLE)},
}


def transition(state: SyncState, event: SyncEvent, resume_to: Optional[SyncState] = None) -> SyncState:
    """Next state for ``event`` in ``state``.

    ``BACKOFF --RETRY-->`` goes back to the working state that failed, passed as ``resume_to``.
    """
    if state is SyncState.BACKOFF and event is SyncEvent.RETRY and resume_to in _WORKING_STATES:
        return resume_to
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None
