"""
certops process entry point.
"""

import asyncio
import signal

import structlog

from certops.core.config import get_settings
from certops.core.exceptions import StorageError
from certops.core.logging import configure_logging
from certops.engine import Engine

logger = structlog.get_logger()


async def run() -> None:
    settings = get_settings()
    engine = Engine(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with engine:
        logger.info(
            "certops running",
            version=settings.app_version,
            environment=settings.environment,
            next_renewal_check=await engine.next_renewal_check(),
        )
        await stop.wait()


def main() -> int:
    settings = get_settings()
    configure_logging(settings)
    try:
        asyncio.run(run())
    except StorageError as e:
        logger.error("Engine failed to start", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
