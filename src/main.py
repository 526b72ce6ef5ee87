"""
Main entry point for the groupwise operator.

Builds the configuration once and wires the store, change watcher,
controller, convergence engine and input plugins together.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import Config
from controller import Controller
from db import DatabaseManager
from events import EventBus, EventRecorder
from finalizers import FinalizerManager
from mapper import EnqueueRequestsForGroupEvents, GroupEventMapper
from plugins.inputs.base import InputPlugin
from plugins.registry import PluginRegistry, register_builtin_plugins
from reconciler import ResourceReconciler
from watch import NotificationWatcher, RecordKind
from workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Config):
        self.config = config
        self.registry = PluginRegistry()
        self.db: Optional[DatabaseManager] = None
        self.watcher: Optional[NotificationWatcher] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing groupwise operator")

        register_builtin_plugins(self.registry)

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            command_timeout=db_config.command_timeout,
        )
        await self.db.connect()
        await self.db.initialize_schema()

        self.event_bus = EventBus()
        recorder = EventRecorder(self.event_bus)

        plugins = self.config.plugins
        engine = await self.registry.get_engine(
            plugins.engine_plugin,
            plugins.get_plugin_config(plugins.engine_plugin),
        )

        ctrl_config = self.config.controller
        queue = RateLimitingQueue(
            ItemExponentialFailureRateLimiter(
                base_delay=ctrl_config.backoff_base_delay,
                max_delay=ctrl_config.backoff_max_delay,
                jitter_factor=ctrl_config.backoff_jitter_factor,
            )
        )
        reconciler = ResourceReconciler(
            store=self.db,
            finalizer_manager=FinalizerManager(self.db),
            engine=engine,
            recorder=recorder,
            finalizer=ctrl_config.finalizer,
        )
        self.controller = Controller(
            reconciler=reconciler,
            queue=queue,
            store=self.db,
            config=ctrl_config,
            group_handler=EnqueueRequestsForGroupEvents(
                GroupEventMapper(self.db), queue
            ),
        )

        self.watcher = NotificationWatcher(self.db.pool)
        self.watcher.add_handler(
            RecordKind.RESOURCE, self.controller.handle_resource_event
        )
        self.watcher.add_handler(RecordKind.GROUP, self.controller.handle_group_event)

        # If not specified, use all registered input plugins
        enabled_inputs = (
            plugins.enabled_input_plugins or self.registry.list_input_plugins()
        )
        for plugin_name in enabled_inputs:
            try:
                config = {"log_level": self.config.api.log_level}
                config.update(plugins.get_plugin_config(plugin_name))
                plugin = await self.registry.get_input_plugin(plugin_name, config)
            except ValueError as e:
                logger.warning(f"{e}, skipping")
                continue
            plugin.set_store(self.db)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application; returns when all components have stopped."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting groupwise operator")

        tasks = [
            asyncio.create_task(self.watcher.start()),
            asyncio.create_task(self.controller.start()),
        ]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping groupwise operator")
        self.running = False

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.watcher:
            await self.watcher.stop()

        if self.controller:
            await self.controller.stop()

        await self.registry.close()

        if self.db:
            await self.db.close()

        logger.info("groupwise operator stopped")


async def main():
    """Main entry point."""
    config = Config.from_env()
    configure_logging(config.api.log_level)

    app = Application(config)

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


if __name__ == "__main__":
    asyncio.run(main())
