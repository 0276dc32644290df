"""Cooperative cancellation of the in-flight transport."""

import logging
import threading

logger = logging.getLogger(__name__)


class CancellationController:
    """Owns the in-flight transport of a run and can terminate it on demand.

    abort() may be called from any thread. It only flips a flag and kills
    the transport; the agent loop notices the flag on its own thread and
    discards whatever events were still in flight.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._transport = None
        self._running = False
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def running(self) -> bool:
        return self._running

    @property
    def is_streaming(self) -> bool:
        return self._transport is not None

    def begin(self) -> None:
        with self._lock:
            self._running = True
            self._aborted = False
            self._transport = None

    def end(self) -> None:
        with self._lock:
            self._running = False
            self._transport = None

    def attach(self, transport) -> None:
        with self._lock:
            self._transport = transport
            aborted = self._aborted
        if aborted:
            transport.kill()

    def detach(self, transport=None) -> None:
        with self._lock:
            if transport is None or self._transport is transport:
                self._transport = None

    def abort(self) -> bool:
        """Abort the current run. Returns False when there was nothing to abort."""
        with self._lock:
            if not self._running or self._aborted:
                return False
            self._aborted = True
            transport = self._transport
        logger.debug("run aborted by user (transport active: %s)", transport is not None)
        if transport is not None:
            transport.kill()
        return True
