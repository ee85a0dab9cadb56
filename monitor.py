"""Health monitor: reclaims stale agents and logs queue statistics."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from exceptions import SwarmError
from job_store import JobStoreClient
from job_types import AgentStatus, QueueStats, TestStatus


def format_stats(stats: QueueStats) -> str:
    """One-line summary of agents and the test queue."""
    agents = " ".join(f"{s.value}={stats.agents.get(s.value, 0)}" for s in AgentStatus)
    tests = " ".join(f"{s.value}={stats.tests.get(s.value, 0)}" for s in TestStatus)
    return (
        f"agents: total={stats.total_agents} {agents} | "
        f"runs: total={stats.total_tests_run} ok={stats.successful_tests} failed={stats.failed_tests} | "
        f"tests: {tests}"
    )


class HealthMonitor:
    def __init__(
        self,
        store: JobStoreClient,
        interval: float = 10.0,
        stale_after: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.interval = interval
        self.stale_after = stale_after
        self.logger = logger or logging.getLogger("swarm.monitor")
        self._stop = asyncio.Event()

    async def check_once(self) -> Optional[QueueStats]:
        """Run one sweep: reclaim stale agents, then log statistics."""
        try:
            reclaimed = await self.store.mark_stale_agents(self.stale_after)
            if reclaimed:
                self.logger.warning(f"Marked {reclaimed} stale agent(s) as offline")
        except SwarmError as e:
            self.logger.error(f"Failed to mark stale agents: {e}")

        try:
            stats = await self.store.stats()
        except SwarmError as e:
            self.logger.error(f"Failed to fetch statistics: {e}")
            return None
        self.logger.info(format_stats(stats))
        return stats

    async def run(self) -> None:
        self.logger.info(f"Starting health monitor (every {self.interval}s, stale after {self.stale_after}s)")
        while not self._stop.is_set():
            await self.check_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Health monitor stopped")

    def stop(self) -> None:
        self._stop.set()
