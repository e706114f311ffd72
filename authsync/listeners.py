"""
Listener registry for client state changes.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shared.models import Client, Session, User, Organization

logger = logging.getLogger(__name__)

StateListener = Callable[
    [Optional[Client], Optional[Session], Optional[User], Optional[Organization]], None
]


@dataclass(frozen=True)
class ListenerHandle:
    """Registration handle returned by add_listener()."""
    listener_id: int


class ListenerRegistry:
    """
    Ordered collection of state-change callbacks.

    Fan-out iterates over a copy of the registrations taken when it starts,
    so a listener added during a notification first sees the next one. A
    listener removed during a notification is skipped if it has not been
    called yet.
    """

    def __init__(self):
        self._listeners: Dict[int, StateListener] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def add_listener(self, callback: StateListener) -> ListenerHandle:
        if not callable(callback):
            raise TypeError("Listener must be callable")

        with self._lock:
            handle = ListenerHandle(next(self._ids))
            self._listeners[handle.listener_id] = callback

        logger.debug(f"Registered listener {handle.listener_id}")
        return handle

    def remove_listener(self, handle: ListenerHandle) -> bool:
        with self._lock:
            removed = self._listeners.pop(handle.listener_id, None) is not None

        if removed:
            logger.debug(f"Removed listener {handle.listener_id}")
        return removed

    def notify_all(self, client: Optional[Client], session: Optional[Session],
                   user: Optional[User], organization: Optional[Organization]) -> int:
        """
        Invoke every registered listener in registration order.

        Returns:
            Number of listeners that completed without raising
        """
        with self._lock:
            registrations = list(self._listeners.items())

        delivered = 0
        for listener_id, callback in registrations:
            with self._lock:
                if listener_id not in self._listeners:
                    continue
            try:
                callback(client, session, user, organization)
                delivered += 1
            except Exception as e:
                logger.error(f"Error in state listener {listener_id}: {e}", exc_info=True)

        return delivered
