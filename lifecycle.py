# lifecycle.py
import shutil
import signal
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional

from logging_config import OperationCancelled, get_logger

logger = get_logger("lifecycle")


class CancellationToken:
    """Cooperative cancellation flag passed into blocking operations.

    ``cancel()`` asks the operation to stop at its next yield point and lets the
    current step finish; ``abort()`` additionally asks it to kill whatever it is
    waiting on. A child token observes its parent.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._parent = parent
        self._cancelled = threading.Event()
        self._aborted = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def abort(self) -> None:
        self._aborted.set()
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def aborted(self) -> bool:
        if self._aborted.is_set():
            return True
        return self._parent is not None and self._parent.aborted

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("operation cancelled")


class InterruptHandler:
    """Two-stage interrupt: the first request is graceful, the second forces.

    ``on_graceful`` and ``on_force`` are called from whichever context delivered
    the interrupt (a key binding or the SIGINT handler).
    """

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self.count = 0
        self.on_graceful: Optional[Callable[[], None]] = None
        self.on_force: Optional[Callable[[], None]] = None
        self._previous_handler = None

    def interrupt(self) -> bool:
        """Registers one interrupt. Returns True when this one is forceful."""
        self.count += 1
        if self.count == 1:
            logger.info("Interrupt received, shutting down")
            self.token.cancel()
            if self.on_graceful:
                self.on_graceful()
            return False
        logger.warning("Second interrupt received, forcing exit")
        self.token.abort()
        if self.on_force:
            self.on_force()
        return True

    def install(self) -> None:
        self._previous_handler = signal.signal(signal.SIGINT, self._handle_signal)

    def uninstall(self) -> None:
        if self._previous_handler is not None:
            signal.signal(signal.SIGINT, self._previous_handler)
            self._previous_handler = None

    def _handle_signal(self, signum, frame) -> None:
        if self.interrupt() and self.on_force is None:
            raise KeyboardInterrupt


class ManagedTempDir:
    """A temporary directory released on every exit path of its ``with`` block."""

    def __init__(self, keep: bool = False, prefix: str = "ytqueue-"):
        self.keep = keep
        self.prefix = prefix
        self.path: Optional[Path] = None

    def __enter__(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix))
        logger.debug(f"Created temporary directory {self.path}")
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path is None:
            return
        if self.keep:
            logger.info(f"Temporary files kept at {self.path}")
        else:
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug(f"Removed temporary directory {self.path}")
        self.path = None
