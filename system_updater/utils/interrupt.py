"""
Cooperative interruption for update runs.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import signal
import threading
from typing import Any, Dict, Optional

from .logger import get_logger

logger = get_logger(__name__)


class InterruptGuard:
    """
    Turns SIGINT and SIGTERM into a flag that the orchestrator checks
    between targets and before each action.

    The first SIGINT only sets the flag so the running action can finish;
    a second SIGINT restores the default handler and interrupts immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._previous: Dict[int, Any] = {}
        self._installed = False
        self.signal_received: Optional[int] = None

    @property
    def interrupted(self) -> bool:
        """Whether an interruption was requested."""
        return self._event.is_set()

    def request(self, signum: Optional[int] = None) -> None:
        """Request interruption without a signal."""
        self.signal_received = signum
        self._event.set()

    def _handle(self, signum: int, frame: Any) -> None:
        if self._event.is_set() and signum == signal.SIGINT:
            logger.warning("Second interrupt received, aborting")
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        logger.warning(f"Received signal {signum}, stopping after the current step")
        self.request(signum)

    def install(self) -> None:
        """Install signal handlers (main thread only)."""
        if self._installed or threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle)
        self._installed = True

    def restore(self) -> None:
        """Restore the handlers that were active before install()."""
        if not self._installed:
            return
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()
        self._installed = False

    def __enter__(self) -> 'InterruptGuard':
        self.install()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.restore()
