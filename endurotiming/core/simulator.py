"""
simulator.py — Live time-release simulator for testing polling clients.

Takes every recorded time of an event, shuffles it and hands it out in
randomly sized batches, as if the times were arriving from the stages.
State is per event, in memory, and lost on restart.

One LiveSimulator instance lives on app.state; each event has its own lock
so polls on different events never wait on each other.
"""

from __future__ import annotations

import logging
import math
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger("endurotiming.simulator")

DEFAULT_BATCH_SIZE = 15
MIN_BATCH_FRACTION = 0.5

Loader = Callable[[], list]


class SimulationNotFound(LookupError):
    """Raised by an explicit reset when the event has no recorded times."""


@dataclass
class SimulationState:
    records: list
    started_at: str
    cursor: int = 0
    released: list = field(default_factory=list)
    last_polled_at: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def remaining(self) -> int:
        return self.total - self.cursor

    @property
    def complete(self) -> bool:
        return self.cursor >= self.total


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class LiveSimulator:
    """Per-event shuffle-and-release state machine.

    absent -> active on reset or first poll, active -> exhausted when every
    record has been released, reset from any state installs a fresh shuffle.
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], str]] = None):
        self._rng = rng or random.Random()
        self._clock = clock or _now
        self._states: dict[int, SimulationState] = {}
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, event_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = self._locks[event_id] = threading.Lock()
            return lock

    def _shuffle(self, records: list) -> list:
        with self._guard:
            keyed = [(self._rng.random(), i) for i in range(len(records))]
        keyed.sort()
        return [records[i] for _, i in keyed]

    def _batch_size(self, requested: int) -> int:
        low = math.ceil(requested * MIN_BATCH_FRACTION)
        with self._guard:
            return self._rng.randint(low, requested)

    def _install(self, event_id: int, records: list) -> SimulationState:
        state = SimulationState(records=self._shuffle(records),
                                started_at=self._clock())
        self._states[event_id] = state
        logger.info("Simulation reset for event %s: %d times", event_id, state.total)
        return state

    # ------------------------------------------------------------------

    def reset(self, event_id: int, loader: Loader) -> dict:
        """Start (or restart) the simulation. Raises SimulationNotFound without times."""
        with self._lock_for(event_id):
            records = list(loader())
            if not records:
                raise SimulationNotFound(f"No recorded times for event {event_id}")
            state = self._install(event_id, records)
            return {
                "total_times": state.total,
                "released": 0,
                "remaining": state.total,
            }

    def poll(self, event_id: int, loader: Loader,
             batch_size: int = DEFAULT_BATCH_SIZE) -> dict:
        """Release the next batch. The first poll on an event resets it implicitly.

        An implicit reset that finds no times answers with an empty, complete
        response and leaves the event without state.
        """
        try:
            requested = int(batch_size)
        except (TypeError, ValueError):
            requested = DEFAULT_BATCH_SIZE
        if requested <= 0:
            requested = DEFAULT_BATCH_SIZE

        with self._lock_for(event_id):
            state = self._states.get(event_id)
            if state is None:
                records = list(loader())
                if not records:
                    return {
                        "newly_released": [],
                        "total_times": 0,
                        "released": 0,
                        "remaining": 0,
                        "simulation_complete": True,
                        "batch_requested": requested,
                        "batch_actual": 0,
                        "last_polled_at": None,
                    }
                state = self._install(event_id, records)

            was_complete = state.complete
            batch = state.records[state.cursor:state.cursor + self._batch_size(requested)]
            state.cursor += len(batch)
            state.released.extend(batch)
            state.last_polled_at = self._clock()

            if state.complete and not was_complete:
                logger.info("Simulation complete for event %s", event_id)

            return {
                "newly_released": list(batch),
                "total_times": state.total,
                "released": len(state.released),
                "remaining": state.remaining,
                "simulation_complete": state.complete,
                "batch_requested": requested,
                "batch_actual": len(batch),
                "last_polled_at": state.last_polled_at,
            }

    def status(self, event_id: int) -> dict:
        with self._lock_for(event_id):
            state = self._states.get(event_id)
            if state is None:
                return {"active": False}
            return {
                "active": True,
                "total_times": state.total,
                "released": len(state.released),
                "remaining": state.remaining,
                "simulation_complete": state.complete,
                "started_at": state.started_at,
                "last_polled_at": state.last_polled_at,
            }

    def discard(self, event_id: int) -> None:
        """Drop an event's simulation, e.g. when the event is deleted."""
        with self._lock_for(event_id):
            self._states.pop(event_id, None)
