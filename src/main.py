"""
Main entry point for the Kratix platform control plane.

Connects the object store, starts the reconciliation manager with the
Promise reconciler attached, and serves the platform API.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import PlatformAPI
from config import get_config
from events import EventBus
from manager import Manager, ManagerConfig
from models import PROMISE_KIND
from reconcilers.promise import PromiseReconciler
from registry import ReconcilerRegistry
from store import ObjectStore

logger = logging.getLogger(__name__)


class Application:
    """Main application that wires the store, manager and API together."""

    def __init__(self):
        self.config = get_config()
        self.store: Optional[ObjectStore] = None
        self.event_bus: Optional[EventBus] = None
        self.manager: Optional[Manager] = None
        self.api: Optional[PlatformAPI] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Kratix platform")

        self.event_bus = EventBus()

        db_config = self.config.database
        self.store = ObjectStore(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=self.event_bus,
        )
        await self.store.connect()
        await self.store.initialize_schema()
        logger.info("Object store initialized")

        ctrl_config = self.config.controller
        self.manager = Manager(
            store=self.store,
            event_bus=self.event_bus,
            registry=ReconcilerRegistry(),
            config=ManagerConfig(
                max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
                resync_interval=ctrl_config.resync_interval,
                backoff_base_delay=ctrl_config.backoff_base_delay,
                backoff_max_delay=ctrl_config.backoff_max_delay,
                backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
            ),
        )
        await self.manager.add_reconciler(
            PROMISE_KIND,
            PromiseReconciler(self.store, self.manager, self.config.platform),
        )

        self.api = PlatformAPI(
            store=self.store,
            event_bus=self.event_bus,
            host=self.config.api.host,
            port=self.config.api.port,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.manager or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting Kratix platform")

        tasks = [
            asyncio.create_task(self.manager.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Kratix platform")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.manager:
            await self.manager.stop()

        if self.store:
            await self.store.close()

        logger.info("Kratix platform stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def cli_main():
    """Console script entry point."""
    logging.basicConfig(
        level=get_config().api.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
