# observers.py
from __future__ import annotations

import logging
import threading
import traceback
from typing import Any, Callable, List

LOG = logging.getLogger(__name__)


class ObserverRegistry:
    """Callback fan-out with failure isolation.

    - Registration and removal match by equality, so `obj.method` passed
      again later finds the original entry. Registering an equal callable
      twice is a no-op.
    - Callbacks run synchronously on the notifying thread, in
      registration order.
    - A callback that raises is logged and skipped; the remaining
      callbacks still run.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def add(self, cb: Callable[..., Any]) -> None:
        if not callable(cb):
            raise TypeError("observer must be callable")
        with self._lock:
            if any(existing == cb for existing in self._callbacks):
                return
            self._callbacks.append(cb)

    def remove(self, cb: Callable[..., Any]) -> bool:
        with self._lock:
            for index, existing in enumerate(self._callbacks):
                if existing == cb:
                    del self._callbacks[index]
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def notify(self, *args: Any) -> int:
        """Invoke every callback. Returns the number that raised."""
        with self._lock:
            callbacks = list(self._callbacks)

        failures = 0
        for cb in callbacks:
            try:
                cb(*args)
            except Exception:
                # Isolation boundary: one observer cannot break a tick.
                failures += 1
                LOG.error("Observer error in %s (%s)\n%s",
                          self._name,
                          getattr(cb, "__qualname__", repr(cb)),
                          traceback.format_exc())
        return failures
