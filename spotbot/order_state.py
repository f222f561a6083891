"""
Per-asset position lifecycle state machine.

Tracks where each asset sits in its open/close lifecycle so overlapping flows
(decision tick, reconciliation tick, manual close) see a consistent phase and
so illegal jumps are caught instead of silently applied.

State Transitions:
    NONE → OPENING → OPEN → CLOSING → CLOSED
    OPENING → NONE            (entry aborted before any fill)
    OPENING → CLOSED          (protection failed, rollback flattened)
    OPENING → ERROR           (protection and rollback both failed)
    CLOSING → OPEN            (exit order failed, position still held)
    OPEN / CLOSING → ERROR    (venue state cannot be explained)
    CLOSED → OPENING          (re-entry after cooldown)
    ERROR → NONE              (operator reset)

Examples:
    >>> phases = PositionStateMachine()
    >>> phases.transition("BTCUSDT", PositionPhase.OPENING)
    <PositionPhase.OPENING: 'OPENING'>
    >>> phases.phase("ETHUSDT")
    <PositionPhase.NONE: 'NONE'>
"""

import threading
from enum import Enum
from typing import Dict

from .logging_setup import logger


class PositionPhase(str, Enum):
    """Lifecycle phases of one asset's position."""

    NONE = "NONE"
    OPENING = "OPENING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


_TRANSITIONS = {
    PositionPhase.NONE: {PositionPhase.OPENING},
    PositionPhase.OPENING: {PositionPhase.OPEN, PositionPhase.NONE, PositionPhase.CLOSED, PositionPhase.ERROR},
    PositionPhase.OPEN: {PositionPhase.CLOSING, PositionPhase.ERROR},
    PositionPhase.CLOSING: {PositionPhase.CLOSED, PositionPhase.OPEN, PositionPhase.ERROR},
    PositionPhase.CLOSED: {PositionPhase.OPENING, PositionPhase.NONE},
    PositionPhase.ERROR: {PositionPhase.NONE},
}


class InvalidTransition(Exception):
    pass


class PositionStateMachine:
    """Thread-safe map of asset → PositionPhase with validated transitions.

    Note:
        This is a state container; callers hold the asset's ``SymbolLocks``
        lock around the venue calls that justify each transition.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phases: Dict[str, PositionPhase] = {}

    def phase(self, symbol: str) -> PositionPhase:
        with self._lock:
            return self._phases.get(symbol, PositionPhase.NONE)

    def transition(self, symbol: str, new_phase: PositionPhase) -> PositionPhase:
        """Move ``symbol`` to ``new_phase``.

        Raises:
            InvalidTransition: If the edge is not part of the lifecycle
        """
        with self._lock:
            current = self._phases.get(symbol, PositionPhase.NONE)
            if new_phase not in _TRANSITIONS[current]:
                raise InvalidTransition(f"{symbol}: {current.value} -> {new_phase.value}")
            self._phases[symbol] = new_phase
        logger.debug(f"{symbol} phase {current.value} -> {new_phase.value}")
        return new_phase

    def restore(self, symbol: str, phase: PositionPhase) -> None:
        """Set a phase directly, bypassing validation (startup recovery)."""
        with self._lock:
            self._phases[symbol] = phase

    def snapshot(self) -> Dict[str, PositionPhase]:
        with self._lock:
            return dict(self._phases)


class SymbolLocks:
    """One re-entrant lock per asset, created on first use.

    Serializes every position mutation for an asset (trailing update,
    reconciliation close, manual close) without blocking other assets.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, symbol: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = threading.RLock()
                self._locks[symbol] = lock
            return lock
