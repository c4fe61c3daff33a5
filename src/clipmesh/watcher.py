"""Clipboard watcher for clipmesh.

Polls a clipboard reader and reports each new non-empty value. The reader is
supplied by the embedding application; clipmesh never talks to the OS
clipboard itself.
"""

import threading
from collections.abc import Callable

from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

POLL_INTERVAL = 0.5


class ClipboardWatcher:
    """Poll a clipboard reader on a background thread."""

    def __init__(
        self,
        read_clipboard: Callable[[], str | None],
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.read_clipboard = read_clipboard
        self.poll_interval = poll_interval
        self.on_clipboard_change: Callable[[str], None] | None = None
        self.changes_seen = 0
        self._last_value: str | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def poll(self) -> str | None:
        """Check the clipboard once; return the value if it changed."""
        try:
            value = self.read_clipboard()
        except Exception as e:
            logger.debug(f"Clipboard read failed: {e}")
            return None

        if not value or value == self._last_value:
            return None

        self._last_value = value
        self.changes_seen += 1
        if self.on_clipboard_change:
            self.on_clipboard_change(value)
        return value

    def prime(self) -> None:
        """Remember the current clipboard so it is not reported as new."""
        try:
            self._last_value = self.read_clipboard()
        except Exception as e:
            logger.debug(f"Clipboard read failed: {e}")

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.poll()
            except Exception as e:
                logger.error(f"Clipboard change handler failed: {e}")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self.prime()
        self._thread = threading.Thread(target=self._run, name="clipboard-watcher", daemon=True)
        self._thread.start()
        logger.info("Clipboard watcher started.")

    def stop(self) -> None:
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join(timeout=5)
            self._thread = None
            logger.info("Clipboard watcher stopped.")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
