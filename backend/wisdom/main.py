import asyncio
import signal
import sys
from contextlib import asynccontextmanager

from wisdom.config import Settings, settings as default_settings
from wisdom.logging_config import get_logger, setup_logging
from wisdom.server import QuoteServer

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(settings: Settings):
    """Manage the server lifecycle - bind/start the sweep, then stop both."""
    server = QuoteServer(settings)
    await server.start()
    try:
        yield server
    finally:
        await server.close()


async def run(settings: Settings) -> None:
    """Serve until SIGINT/SIGTERM. Bind failures propagate."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    async with lifespan(settings):
        await stop.wait()
        logger.info("shutdown_signal_received")


def main() -> None:
    settings = default_settings
    setup_logging(settings)
    try:
        asyncio.run(run(settings))
    except OSError as e:
        logger.critical("server_error", addr=settings.addr, error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
