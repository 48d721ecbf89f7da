"""Relay entry point — run the consumer pool without the HTTP surface.

Learn: The relay pushes to sessions registered in *its own* process, so a
standalone relay has no live sessions: every event it processes lands in
its offline buffer. Use it to drain a queue, smoke-test a broker, or watch
the dedup / dead-letter behavior from the logs. Production delivery runs
inside the API process (JOBRELAY_RUN_CONSUMER=true, the default).

Usage:
    python -m jobrelay.dispatcher.main

Or via the console script:
    jobrelay-relay
"""

import asyncio
import signal

import structlog

from jobrelay.config import settings
from jobrelay.logging_config import configure_logging
from jobrelay.runtime import RelayRuntime

logger = structlog.get_logger()


async def run() -> None:
    """Run the relay until SIGINT / SIGTERM."""
    runtime = RelayRuntime.from_settings(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        "relay.starting",
        broker=settings.broker_backend,
        queue=settings.queue,
        workers=settings.worker_count,
    )
    await runtime.start(run_consumer=True)
    try:
        await stop.wait()
    finally:
        await runtime.stop()
        logger.info("relay.stopped", **runtime.stats.snapshot())


def main() -> None:
    """CLI entry point."""
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
