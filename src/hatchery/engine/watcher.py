"""Re-apply the declared state whenever the configuration changes."""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Optional

from watchfiles import awatch

from hatchery.config import ConfigManager
from hatchery.errors import HatcheryError
from hatchery.models.config import HatcheryConfig
from hatchery.models.container import ContainerSpec
from hatchery.models.records import BatchReport


logger = logging.getLogger(__name__)

BatchRunner = Callable[[HatcheryConfig, List[ContainerSpec]], Awaitable[BatchReport]]


class ConfigWatcher:
    """Applies the configuration once, then again after every effective change."""

    def __init__(
        self,
        config_manager: ConfigManager,
        runner: BatchRunner,
        on_report: Optional[Callable[[BatchReport], None]] = None,
    ):
        """Initialize the watcher."""
        self.config_manager = config_manager
        self.runner = runner
        self.on_report = on_report
        self.shutdown_event = asyncio.Event()
        self._apply_lock = asyncio.Lock()
        self.runs = 0

    async def apply(self) -> Optional[BatchReport]:
        """Run one batch with the currently loaded configuration."""
        async with self._apply_lock:
            try:
                report = await self.runner(self.config_manager.config, self.config_manager.select())
            except HatcheryError as e:
                logger.error(f"Apply failed: {e}")
                return None
            self.runs += 1
            if self.on_report:
                self.on_report(report)
            return report

    async def run(self):
        """Apply, then watch until shutdown is requested."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            await self.apply()
            await self._watch_loop()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    async def _watch_loop(self):
        """Watch for configuration changes."""
        logger.info(f"Watching {self.config_manager.config_dir} for changes")
        async for _ in awatch(self.config_manager.config_dir, stop_event=self.shutdown_event):
            if not self.config_manager.has_changed():
                logger.debug("Configuration touched but unchanged, skipping")
                continue

            logger.info("Configuration changed, reloading")
            try:
                await self.config_manager.load()
            except HatcheryError as e:
                logger.error(f"Failed to reload configuration: {e}")
                continue
            await self.apply()

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()
