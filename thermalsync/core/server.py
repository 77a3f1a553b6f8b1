"""Core SyncServer - wires the local cache, sync queue and remote store"""

import asyncio
import logging
from typing import Optional

from .. import config
from ..services.completion_service import CompletionAggregator
from ..services.diagnostics import DiagnosticsService
from ..services.firestore_log_store import FirestoreLogStore, connect
from ..storage.local_db import LocalDatabase
from ..sync.clock import HybridLogicalClock
from ..sync.sync_queue import SyncQueue
from ..sync.sync_service import ReconciliationEngine
from .log_service import ThermalLogService

logger = logging.getLogger(__name__)


class SyncServer:
    """Field client process: owns every component and runs the background loops"""

    def __init__(self, client=None, db_path: str = config.LOCAL_DB_PATH):
        logger.info("Initializing ThermalSync client...")

        self.diagnostics = DiagnosticsService()
        self.database = LocalDatabase(db_path)
        self.clock = HybridLogicalClock(self.database)
        self.queue = SyncQueue(self.database)

        self._client = client
        self.store: Optional[FirestoreLogStore] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.service = ThermalLogService(self.database, self.queue, self.clock)

        self.running = False
        logger.info(f"ThermalSync client initialized (device_id: {config.DEVICE_ID})")

    def _connect(self):
        """Create the remote store and the engine that drains into it"""
        if self._client is None:
            self._client = connect()
        self.store = FirestoreLogStore(self._client)
        aggregator = CompletionAggregator(self.store)
        self.engine = ReconciliationEngine(
            self.queue,
            self.store,
            aggregator,
            self.database,
            self.clock,
            diagnostics=self.diagnostics,
        )
        self.service.store = self.store
        self.service.engine = self.engine

    async def start(self):
        """Start the server and all background loops"""
        try:
            logger.info("Starting ThermalSync client...")
            self._connect()
            self.diagnostics.set_online(True)
            self.running = True

            await asyncio.gather(
                self.engine.start(),
                self._status_loop(),
            )
        except Exception as e:
            logger.error(f"Error starting ThermalSync client: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop loops, attempting one last drain before exit"""
        logger.info("Stopping ThermalSync client...")
        self.running = False

        if self.engine is None:
            return

        await self.engine.stop()
        try:
            report = await self.engine.flush()
            logger.info(f"Final flush: {len(report.results)} processed, {report.remaining} still pending")
        except Exception as e:
            logger.error(f"Error during final flush: {e}")

        logger.info("ThermalSync client stopped")

    async def _status_loop(self):
        """Log queue health periodically"""
        while self.running:
            try:
                await asyncio.sleep(config.STATUS_LOG_INTERVAL_S)
                status = self.queue.status()
                summary = self.diagnostics.get_summary()
                logger.info(
                    f"Sync status: {status.pending_count} pending, "
                    f"{status.dead_letter_count} dead-lettered, {status.exhausted_count} exhausted, "
                    f"delayed={status.sync_delayed}, failure rate {summary['failure_rate']}%"
                )
                if status.last_error:
                    logger.warning(f"Last sync error: {status.last_error}")
            except asyncio.CancelledError:
                logger.info("Status loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in status loop: {e}", exc_info=True)
