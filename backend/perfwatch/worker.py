"""Headless collection process: the orchestrator without the HTTP surface."""

import asyncio
import logging
import signal

from perfwatch.core.config import APP_VERSION, settings
from perfwatch.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


class Worker:
    """Runs the collection runtime until a shutdown signal arrives."""

    def __init__(self, runtime: Runtime | None = None):
        self.runtime = runtime
        self._shutdown = asyncio.Event()

    def shutdown(self):
        """Signal graceful shutdown."""
        logger.info("Shutdown signal received")
        self._shutdown.set()

    async def run(self):
        self.runtime = self.runtime or build_runtime()
        logger.info("Worker starting (%s %s)", settings.APP_NAME, APP_VERSION)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.shutdown))

        await self.runtime.start()
        try:
            await self._shutdown.wait()
        finally:
            logger.info("Worker shutting down")
            await self.runtime.stop()


def main():
    """Entry point for the perfwatch-worker console script."""
    from perfwatch.core.logging import setup_logging
    setup_logging()

    asyncio.run(Worker().run())


if __name__ == "__main__":
    main()
