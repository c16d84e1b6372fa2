"""
Orderly shutdown on SIGINT/SIGTERM.

The signal handler only cancels a token. The main flow, blocked in
ShutdownController.wait(), wakes up and performs the single disconnect, so the
session is never entered from inside a signal handler.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Upper bound on how long a blocked wait goes without re-checking the token.
POLL_INTERVAL_S = 0.5


class CancelToken:
    """Shared cancellation flag passed to every blocking session operation."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "") -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class ShutdownController:
    def __init__(self, session: Any, token: Optional[CancelToken] = None) -> None:
        self.session = session
        self.token = token or CancelToken()
        self._lock = threading.Lock()
        self._disconnected = False
        self._previous: dict[int, Any] = {}

    def install(self, signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Register signal handlers. Must be called from the main thread."""
        for signum in signals:
            self._previous[signum] = signal.signal(signum, self._handler)
        logger.debug("Shutdown handlers installed for %s", signals)

    def uninstall(self) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()

    def _handler(self, signum: int, frame: Any) -> None:
        self.request_shutdown(f"signal {signal.Signals(signum).name}")

    def request_shutdown(self, reason: str) -> None:
        if self.token.cancel(reason):
            logger.info("Shutdown requested (%s)", reason)
        else:
            logger.debug("Shutdown already requested; ignoring %s", reason)

    def wait(self) -> None:
        """Block until shutdown is requested, then disconnect the session."""
        while not self.token.wait(POLL_INTERVAL_S):
            pass
        logger.info("signal caught - exiting (%s)", self.token.reason)
        self.shutdown()

    def shutdown(self) -> None:
        """Disconnect the session; later calls are no-ops."""
        with self._lock:
            if self._disconnected:
                return
            self._disconnected = True
        try:
            self.session.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        else:
            logger.info("MQTT disconnected")
