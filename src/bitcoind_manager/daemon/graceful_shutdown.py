"""Signal handling for the long-running manager process.

Usage:
    handler = AsyncShutdownHandler()
    await handler.setup()
    await handler.wait_for_shutdown()
    # stop bitcoind, flush logs

SIGTERM (container stop) and SIGINT (Ctrl+C) both request shutdown. The
manager then stops bitcoind gracefully before exiting, so the container
runtime's stop timeout should exceed ``daemon.stop_timeout``.
"""

import asyncio
import signal

from loguru import logger


class AsyncShutdownHandler:
    """Async-compatible shutdown handler."""

    def __init__(self) -> None:
        self.running = True
        self._shutdown_event: asyncio.Event | None = None

    async def setup(self) -> None:
        """Set up async event and signal handlers."""
        self._shutdown_event = asyncio.Event()

        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, self._sync_handler)

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle signal in async context."""
        if self.running:
            logger.info(f"Received {sig.name}, shutting down")
        self.running = False
        if self._shutdown_event:
            self._shutdown_event.set()

    def _sync_handler(self, signum: int, frame) -> None:
        """Sync signal handler for Windows."""
        self._handle_signal(signal.Signals(signum))

    def request_shutdown(self) -> None:
        """Trigger shutdown without a signal (tests, embedding callers)."""
        self._handle_signal(signal.SIGTERM)

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        if self._shutdown_event:
            await self._shutdown_event.wait()
