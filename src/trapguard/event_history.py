#!/usr/bin/env python3
"""
Per-address attack event history with time-based retention.

This module keeps, for every source address, the ordered list of attack
events seen within the retention horizon. The rule engine counts these
events over sliding windows for rate-based conditions.

Security Considerations:
- Bounded memory: a maintenance sweep purges events past the retention horizon
- Sweeps run on a background thread, never inside a request's critical path
- Per-address locks let callers serialize check/append/evaluate sequences
  for one address while other addresses proceed in parallel
"""

import bisect
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from .attack_types import AttackEvent
from .metrics import HISTORY_ADDRESSES


class EventHistoryStore:
    """
    Append-only, time-bounded event log keyed by address.

    Invariant: each address's list is non-decreasing in timestamp and is
    removed entirely once a sweep empties it.

    Thread-safe: Yes (structure lock for the map, per-address locks for callers)
    """

    DEFAULT_RETENTION_SECONDS = 3600      # 1 hour
    DEFAULT_CLEANUP_INTERVAL_SECONDS = 300  # 5 minutes

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize event history store.

        Args:
            retention_seconds: Events older than this are purged by sweeps
            cleanup_interval_seconds: Janitor thread period
            clock: Time source returning epoch seconds

        Raises:
            ValueError: If retention or interval is not positive
        """
        if retention_seconds <= 0:
            raise ValueError("Retention must be positive")
        if cleanup_interval_seconds <= 0:
            raise ValueError("Cleanup interval must be positive")

        self.retention_seconds = retention_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._events: Dict[str, List[AttackEvent]] = {}
        self._address_locks: Dict[str, threading.RLock] = {}
        self._structure_lock = threading.Lock()

        self._sweep_hooks: List[Callable[[float], None]] = []
        self._janitor: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def address_lock(self, address: str) -> threading.RLock:
        """
        Get the lock serializing decisions for one address.

        The lock is reentrant so a holder may call append() and the
        windowed queries without deadlocking.
        """
        with self._structure_lock:
            lock = self._address_locks.get(address)
            if lock is None:
                lock = threading.RLock()
                self._address_locks[address] = lock
            return lock

    @contextmanager
    def hold(self, address: str):
        """
        Hold the address lock for the duration of a with-block.

        Retries if a sweep retired the lock between lookup and acquire, so
        two callers never serialize on different locks for one address.
        """
        while True:
            lock = self.address_lock(address)
            lock.acquire()
            with self._structure_lock:
                current = self._address_locks.get(address)
            if current is lock:
                break
            lock.release()
        try:
            yield lock
        finally:
            lock.release()

    def append(self, event: AttackEvent) -> int:
        """
        Append an event to its address's history.

        Out-of-order events are inserted at their timestamp position so the
        list stays sorted.

        Returns:
            Number of events now held for the address
        """
        with self._structure_lock:
            events = self._events.setdefault(event.address, [])
            if not events or event.timestamp >= events[-1].timestamp:
                events.append(event)
            else:
                timestamps = [e.timestamp for e in events]
                index = bisect.bisect_right(timestamps, event.timestamp)
                events.insert(index, event)
            HISTORY_ADDRESSES.set(len(self._events))
            return len(events)

    def recent_events(
        self,
        address: str,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> List[AttackEvent]:
        """
        Events for an address with now - timestamp < window_seconds.

        The window is exclusive at its old edge: an event exactly
        window_seconds old is outside it.
        """
        if now is None:
            now = self.clock()
        with self._structure_lock:
            events = list(self._events.get(address, ()))
        return [e for e in events if now - e.timestamp < window_seconds]

    def recent_count(
        self,
        address: str,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> int:
        """Count events for an address inside the sliding window."""
        return len(self.recent_events(address, window_seconds, now))

    def all(self, address: str) -> List[AttackEvent]:
        """Copy of every retained event for an address, oldest first."""
        with self._structure_lock:
            return list(self._events.get(address, ()))

    def all_events(self) -> List[AttackEvent]:
        """Copy of every retained event across addresses."""
        with self._structure_lock:
            result = []
            for events in self._events.values():
                result.extend(events)
        return result

    def addresses(self) -> List[str]:
        with self._structure_lock:
            return list(self._events.keys())

    def total_events(self) -> int:
        with self._structure_lock:
            return sum(len(events) for events in self._events.values())

    def __len__(self) -> int:
        with self._structure_lock:
            return len(self._events)

    def __contains__(self, address: str) -> bool:
        with self._structure_lock:
            return address in self._events

    def clear(self) -> None:
        with self._structure_lock:
            self._events.clear()
            HISTORY_ADDRESSES.set(0)

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Purge events older than the retention horizon.

        Addresses whose lists become empty are removed entirely. Only ever
        deletes, so it is safe to run concurrently with readers.

        Args:
            now: Reference time (defaults to the store clock)

        Returns:
            Number of events removed
        """
        if now is None:
            now = self.clock()

        removed = 0
        with self._structure_lock:
            for address in list(self._events.keys()):
                events = self._events[address]
                kept = [e for e in events if now - e.timestamp < self.retention_seconds]
                removed += len(events) - len(kept)
                if kept:
                    self._events[address] = kept
                else:
                    del self._events[address]

            # Includes locks taken for addresses that never stored an event
            for address in list(self._address_locks.keys()):
                if address in self._events:
                    continue
                lock = self._address_locks[address]
                # A held lock belongs to an in-flight decision; leave it
                if lock.acquire(blocking=False):
                    try:
                        del self._address_locks[address]
                    finally:
                        lock.release()

            HISTORY_ADDRESSES.set(len(self._events))
            remaining = len(self._events)

        for hook in list(self._sweep_hooks):
            hook(now)

        if removed:
            self.logger.debug(
                f"History sweep removed {removed} events, {remaining} addresses retained"
            )
        return removed

    def add_sweep_hook(self, hook: Callable[[float], None]) -> None:
        """Register a callable run with the reference time after every sweep."""
        self._sweep_hooks.append(hook)

    def start_janitor(self) -> None:
        """Start the background sweep thread (idempotent)."""
        if self._janitor is not None and self._janitor.is_alive():
            return

        self._stop_event.clear()
        self._janitor = threading.Thread(
            target=self._janitor_loop,
            name="trapguard-history-janitor",
            daemon=True,
        )
        self._janitor.start()
        self.logger.info(
            f"History janitor started (interval={self.cleanup_interval_seconds}s, "
            f"retention={self.retention_seconds}s)"
        )

    def stop_janitor(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background sweep thread and wait for it to exit."""
        if self._janitor is None:
            return
        self._stop_event.set()
        self._janitor.join(timeout)
        self._janitor = None
        self.logger.info("History janitor stopped")

    @property
    def janitor_running(self) -> bool:
        return self._janitor is not None and self._janitor.is_alive()

    def _janitor_loop(self) -> None:
        while not self._stop_event.wait(self.cleanup_interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                # Keep the janitor alive; the next tick retries
                self.logger.error(f"History sweep failed: {e}", exc_info=True)
