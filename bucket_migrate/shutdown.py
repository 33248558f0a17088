"""Graceful shutdown on SIGINT/SIGTERM.

Signal handlers only set a cancellation token. The batch scheduler checks the
token between batches, lets the in-flight batch drain and then saves the
checkpoint itself, so nothing outside the state owner ever touches it.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Cancellation token fed by process signals."""

    def __init__(self, drain_timeout: float = 60.0) -> None:
        self.drain_timeout = drain_timeout
        self.reason: str | None = None
        self.signal_count = 0
        self._event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []
        self._previous: dict[signal.Signals, Any] = {}

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str = "requested") -> None:
        self.signal_count += 1
        if self._event.is_set():
            logger.warning(
                "Shutdown already in progress, waiting for in-flight transfers",
                reason=reason,
            )
            return
        self.reason = reason
        self._event.set()
        logger.warning(
            "Shutdown requested, finishing current batch",
            reason=reason,
            drain_timeout=self.drain_timeout,
        )

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns ``True`` if shutdown cut the sleep short."""
        if seconds <= 0:
            return self.requested
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def _handle_signal(self, sig: signal.Signals) -> None:
        self.request(sig.name)

    def install(self) -> None:
        """Install handlers on the running loop (falls back to ``signal.signal``)."""
        self._loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support add_signal_handler.
                self._previous[sig] = signal.getsignal(sig)
                self._install_fallback(sig)
            except ValueError:
                # Only the main thread may install signal handlers.
                logger.debug("Signal handlers not installed", signal=sig.name)
                continue
            self._installed.append(sig)

    def _install_fallback(self, sig: signal.Signals) -> None:
        loop = self._loop
        assert loop is not None
        signal.signal(
            sig,
            lambda signum, _frame: loop.call_soon_threadsafe(
                self._handle_signal, signal.Signals(signum)
            ),
        )

    def restore(self) -> None:
        """Remove the handlers installed by ``install``."""
        for sig in self._installed:
            if sig in self._previous:
                signal.signal(sig, self._previous.pop(sig))
            elif self._loop is not None:
                self._loop.remove_signal_handler(sig)
        self._installed.clear()

    async def __aenter__(self) -> ShutdownCoordinator:
        self.install()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.restore()
