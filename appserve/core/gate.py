import asyncio
import enum
import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)

FAILED_RETRY_SECONDS = 600


class GateState(enum.Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    FAILED = "failed"


def backoff_seconds(attempt: int) -> int:
    if attempt <= 1:
        return 5
    if attempt <= 3:
        return 10
    return FAILED_RETRY_SECONDS


class StartupGate:
    """Holds requests back until the startup tasks have finished.

    Each finished startup task calls ``advance()``; once ``threshold`` tasks
    have reported in, the gate opens for good and every waiting request is
    released. ``fail()`` is terminal: a gate that failed never opens.

    The event loop is single-threaded, so ``level``, ``state`` and the
    per-address attempt counts are only touched between awaits and need no
    lock.
    """

    def __init__(self, threshold: int = 2, wait_seconds: float = 5.0):
        self.threshold = threshold
        self.wait_seconds = wait_seconds
        self.level = 0
        self.state = GateState.NOT_READY
        self.attempts: Dict[str, int] = {}
        # one event per event loop; a test client may drive several loops
        self._opened: Dict[asyncio.AbstractEventLoop, asyncio.Event] = {}

    @property
    def is_ready(self) -> bool:
        return self.state is GateState.READY

    @property
    def is_failed(self) -> bool:
        return self.state is GateState.FAILED

    def _event(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        event = self._opened.get(loop)
        if event is None:
            event = self._opened[loop] = asyncio.Event()
        return event

    def _release_waiters(self) -> None:
        try:
            current: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        for loop, event in list(self._opened.items()):
            if loop is current:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)
        self._opened.clear()

    def advance(self) -> None:
        if self.state is not GateState.NOT_READY:
            return
        self.level += 1
        logger.debug(f"Startup progress {self.level}/{self.threshold}")
        if self.level >= self.threshold:
            self.state = GateState.READY
            self.attempts.clear()
            self._release_waiters()
            logger.info("Server ready")

    def fail(self) -> None:
        if self.state is not GateState.NOT_READY:
            return
        self.state = GateState.FAILED
        self.attempts.clear()
        self._release_waiters()
        logger.error("Server failed to start; refusing requests")

    async def wait(self) -> bool:
        """Wait up to ``wait_seconds`` for the gate to open.

        Returns True when the gate is open. Other requests keep being served
        while this one waits.
        """
        if self.state is not GateState.NOT_READY:
            return self.is_ready
        try:
            await asyncio.wait_for(self._event().wait(), timeout=self.wait_seconds)
        except asyncio.TimeoutError:
            pass
        return self.is_ready

    def retry_after(self, address: str) -> int:
        """Count another refused request from ``address`` and return its retry hint."""
        if self.is_failed:
            return FAILED_RETRY_SECONDS
        attempt = self.attempts.get(address, 0) + 1
        self.attempts[address] = attempt
        return backoff_seconds(attempt)
