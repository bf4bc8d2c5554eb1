import logging
import signal
import threading
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class Lifecycle:
    """
    Shutdown coordination for one process.

    Resources are registered as they are opened and released in reverse
    order by ``shutdown()``; a stop event lets long-running loops exit at
    their next safe point.
    """

    def __init__(self):
        self.stop_event = threading.Event()
        self._closers: List[Tuple[str, Callable[[], None]]] = []
        self._closed = False
        self._lock = threading.Lock()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to ``request_stop``. Main thread only."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, sig, frame):
        logger.info(f"Shutdown signal received ({signal.Signals(sig).name}), stopping...")
        self.request_stop()

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def register(self, name: str, closer: Callable[[], None]) -> None:
        with self._lock:
            self._closers.append((name, closer))

    def shutdown(self) -> None:
        """Set the stop event and run every closer once, newest first."""
        self.request_stop()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closers = list(reversed(self._closers))

        for name, closer in closers:
            try:
                closer()
            except Exception as e:
                logger.error(f"Error during shutdown of {name}: {e}")
        logger.info("Shutdown complete")
