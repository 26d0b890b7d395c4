"""
Observable projection of the store state.

This module provides the thread-safe state holder that every store mutation
goes through, and the subscription interface observers use to follow it.

Architecture:
  - StateManager: Owns a StoreState and the latest StoreSnapshot
  - StoreState: Mutable dataclass, only edited inside mutate()
  - StoreSnapshot: Frozen copy handed to readers and observers

State Update Pattern:
  1. Caller enters mutate() and edits the yielded working copy
  2. On exit, registered hooks run in order against the working copy
     (cascading rules live there)
  3. The working copy becomes the state, the version is incremented and a
     new snapshot is published
  4. Observers are called synchronously with the new snapshot, before
     mutate() returns

If the block raises, the working copy is thrown away and nothing is
published, so readers never see a half-applied update.

Thread Safety:
  - State and snapshot access protected by self._lock (RLock)
  - Mutations are expected from the store's event loop; other threads may
    read snapshots at any time
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator, List

from .model import StoreSnapshot, StoreState

logger = logging.getLogger(__name__)

Observer = Callable[[StoreSnapshot], None]
Hook = Callable[[StoreState, StoreSnapshot], None]


class StateManager:
    """Thread-safe state manager."""

    def __init__(self):
        self._state = StoreState()
        self._lock = threading.RLock()  # Use RLock for reentrant locking
        self._version = 0
        self._snapshot = self._state.freeze(self._version)
        self._hooks: List[Hook] = []
        self._observers: List[Observer] = []

    def get_version(self) -> int:
        with self._lock:
            return self._version

    def _inc_version(self) -> None:
        # Assumes lock is held
        self._version += 1

    def get_snapshot(self) -> StoreSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def snapshot(self) -> StoreSnapshot:
        return self.get_snapshot()

    def add_hook(self, hook: Hook) -> None:
        """Register a post-mutation hook. Hooks run in registration order."""
        self._hooks.append(hook)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Subscribe to snapshots.

        Returns:
            Callable that removes the subscription
        """
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    @contextmanager
    def mutate(self) -> Iterator[StoreState]:
        with self._lock:
            previous = self._snapshot
            working = replace(self._state)
            yield working
            for hook in self._hooks:
                hook(working, previous)
            self._state = working
            self._inc_version()
            self._snapshot = working.freeze(self._version)
            snapshot = self._snapshot
            observers = list(self._observers)

        for observer in observers:
            try:
                observer(snapshot)
            except Exception:
                logger.exception(f"Observer {observer!r} failed on version {snapshot.version}")
