"""
Notification engine.

Tracks which characteristics a central has subscribed to and turns value
pushes into PropertiesChanged signals. Pushes may come from any thread;
signals are queued under a lock and emitted from the GLib main loop,
which is the only thread allowed to touch exported D-Bus objects.
"""

import collections
import logging
import threading
from typing import Callable, Deque, Dict, Optional, Tuple

from .exceptions import NotSupported
from .model import AttributeKind, AttributeNode, AttributeTree
from .values import AttributeValue, encode_value

logger = logging.getLogger(__name__)

Emitter = Callable[[str, bytes], None]
Scheduler = Callable[[Callable[[], bool]], object]

# Signals emitted per idle callback before yielding back to the main loop
DRAIN_BATCH_SIZE = 32


def _glib_scheduler(callback: Callable[[], bool]) -> object:
    from gi.repository import GLib

    return GLib.idle_add(callback)


class SubscriberState:
    """Notifying flag and last pushed value of one characteristic."""

    __slots__ = ("notifying", "last_value")

    def __init__(self):
        self.notifying = False
        self.last_value: Optional[AttributeValue] = None


class NotificationEngine:
    """
    Serializes value pushes into outbound value-changed signals.

    `emitter(path, payload)` is called on the main loop for each queued
    signal; `scheduler(callback)` must run `callback` on the main loop
    (GLib.idle_add by default) and call it again while it returns True.
    """

    def __init__(
        self,
        tree: AttributeTree,
        emitter: Optional[Emitter] = None,
        scheduler: Optional[Scheduler] = None,
        verbose: bool = False,
        batch_size: int = DRAIN_BATCH_SIZE,
    ):
        self.tree = tree
        self.emitter = emitter
        self.scheduler = scheduler or _glib_scheduler
        self.verbose = verbose
        self.batch_size = batch_size
        self._lock = threading.Lock()
        self._queue: Deque[Tuple[str, bytes]] = collections.deque()
        self._drain_scheduled = False
        self._states: Dict[str, SubscriberState] = {
            node.path: SubscriberState()
            for node in tree
            if node.kind is AttributeKind.CHARACTERISTIC
        }

    def _characteristic(self, key: str) -> AttributeNode:
        node = self.tree.resolve(key)
        if node.kind is not AttributeKind.CHARACTERISTIC:
            raise NotSupported(f"{node.path} is not a characteristic")
        return node

    def start_notify(self, path: str) -> None:
        """Mark a characteristic as notifying. Repeated calls are no-ops."""
        node = self._characteristic(path)
        if not node.notifiable:
            raise NotSupported(f"{node.path} does not support notifications")
        with self._lock:
            state = self._states[node.path]
            if state.notifying:
                return
            state.notifying = True
        logger.info(f"Notifications started on {node.path}")

    def stop_notify(self, path: str) -> None:
        node = self._characteristic(path)
        if not node.notifiable:
            raise NotSupported(f"{node.path} does not support notifications")
        with self._lock:
            state = self._states[node.path]
            if not state.notifying:
                return
            state.notifying = False
        logger.info(f"Notifications stopped on {node.path}")

    def stop_all(self) -> None:
        """Drop every subscription and any signal not yet emitted."""
        with self._lock:
            for state in self._states.values():
                state.notifying = False
            self._queue.clear()

    def is_notifying(self, path: str) -> bool:
        node = self._characteristic(path)
        with self._lock:
            return self._states[node.path].notifying

    def last_value(self, path: str) -> Optional[AttributeValue]:
        node = self._characteristic(path)
        with self._lock:
            return self._states[node.path].last_value

    def record_value(self, path: str, value: AttributeValue) -> None:
        """Store a value without signaling it (used for successful writes)."""
        node = self._characteristic(path)
        with self._lock:
            self._states[node.path].last_value = value

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def set_value(self, key: str, value: AttributeValue) -> bool:
        """
        Record a new value and, when a central is subscribed, queue a
        value-changed signal for it. Safe to call from any thread.

        Returns True when a signal was queued.
        """
        node = self._characteristic(key)
        payload = encode_value(value)

        schedule = False
        with self._lock:
            state = self._states[node.path]
            state.last_value = value
            if not (state.notifying and node.notifiable):
                return False
            self._queue.append((node.path, payload))
            if not self._drain_scheduled:
                self._drain_scheduled = True
                schedule = True

        if self.verbose:
            logger.info(f"Queued notification on {node.path} ({len(payload)} bytes)")
        if schedule:
            self.scheduler(self._drain)
        return True

    def _drain(self) -> bool:
        """
        Emit up to batch_size queued signals in order. Runs on the main loop.

        Returns True while signals remain so the idle source stays
        installed and inbound calls are served between batches.
        """
        for _ in range(self.batch_size):
            with self._lock:
                if not self._queue:
                    self._drain_scheduled = False
                    return False
                path, payload = self._queue.popleft()
            if self.emitter is None:
                logger.debug(f"No emitter attached, dropping notification on {path}")
                continue
            try:
                self.emitter(path, payload)
            except Exception as e:
                logger.error(f"Error sending notification on {path}: {e}")

        with self._lock:
            if self._queue:
                return True
            self._drain_scheduled = False
            return False
