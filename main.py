"""
ThermalSync - offline-first hourly log client

Runs next to the field form, keeps hourly readings in a local cache and
synchronizes them with the Firestore log hierarchy whenever it can.
"""

import asyncio
import logging
import signal
import sys

from thermalsync.core.server import SyncServer
from thermalsync.utils.logger import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


async def main():
    """Main entry point"""
    server = SyncServer()
    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()

    def signal_handler(sig):
        logger.info(f"Received signal {sig.name}")
        stopping.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    server_task = asyncio.create_task(server.start())
    stop_task = asyncio.create_task(stopping.wait())

    try:
        done, _ = await asyncio.wait({server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if server_task in done:
            server_task.result()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        await server.stop()
        for task in (server_task, stop_task):
            task.cancel()
        await asyncio.gather(server_task, stop_task, return_exceptions=True)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Client stopped by user")
    except Exception as e:
        logger.error(f"Client crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
