"""
Lifecycle coordinator for the quantaflow process.

The runtime owns the shared event bus and the job orchestrator, configures
the hosted modules, and coordinates their startup and shutdown order.
"""

from __future__ import annotations

import logging

from .bus import EventBus
from .contracts import BaseModule, HealthStatus, ModuleConfig
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class Runtime:
    """Manage module lifecycle around one bus and one job orchestrator."""

    def __init__(self, *, bus: EventBus, orchestrator: JobOrchestrator) -> None:
        self.bus = bus
        self.orchestrator = orchestrator
        self._modules: list[BaseModule] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def modules(self) -> list[BaseModule]:
        return list(self._modules)

    async def add_module(self, module: BaseModule, config: ModuleConfig | None = None) -> None:
        """
        Register a module with an optional configuration.

        Modules receive the shared bus before configuration.
        """
        module.set_bus(self.bus)
        await module.configure(config or ModuleConfig())
        self._modules.append(module)
        logger.info("Registered module %s", module.name)

    async def start(self) -> None:
        """Start the bus, then every module in registration order."""
        if self._running:
            logger.warning("Runtime already running.")
            return
        await self.bus.start()
        for module in self._modules:
            logger.info("Starting module %s", module.name)
            await module.start()
        self._running = True
        logger.info("Runtime started %d modules.", len(self._modules))

    async def stop(self) -> None:
        """Stop the active job, the modules in reverse order, then the bus."""
        if not self._running:
            logger.warning("Runtime stop requested while not running.")
            return
        await self.orchestrator.shutdown()
        for module in reversed(self._modules):
            try:
                await module.stop()
            except Exception:
                logger.exception("Module %s failed to stop cleanly.", module.name)
        await self.bus.stop()
        self._running = False
        logger.info("Runtime stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Aggregate health information from the orchestrator and all modules."""
        reports: dict[str, HealthStatus] = {"orchestrator": await self.orchestrator.health()}
        for module in self._modules:
            reports[module.name] = await module.health()
        return reports

    async def overall_health(self) -> str:
        return self.determine_overall_status(await self.health())

    @staticmethod
    def determine_overall_status(reports: dict[str, HealthStatus]) -> str:
        statuses = {report.status for report in reports.values()}
        if "error" in statuses:
            return "error"
        if "degraded" in statuses:
            return "degraded"
        return "healthy"


__all__ = ["Runtime"]
