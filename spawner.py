"""Supervisor: runs N agent processes and respawns the ones that crash."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 78
EXIT_INTERRUPTED = 130


def default_agent_command(global_args: Sequence[str] = ()) -> List[str]:
    """Command line for one agent child; ``global_args`` go before the sub-command."""
    return [sys.executable, "-m", "cli", *global_args, "agent"]


@dataclass
class AgentSlot:
    """One supervised position in the pool; its process may be replaced over time."""

    index: int
    process: Any = None
    spawn_count: int = 0
    failures: Deque[float] = field(default_factory=deque)
    abandoned: bool = False
    last_exit_code: Optional[int] = None

    @property
    def label(self) -> str:
        return f"Agent {self.index + 1}"


class Supervisor:
    def __init__(
        self,
        count: int,
        command: Optional[Sequence[str]] = None,
        respawn_delay: float = 5.0,
        max_respawn_delay: float = 60.0,
        max_rapid_failures: int = 5,
        rapid_failure_window: float = 30.0,
        env: Optional[Dict[str, str]] = None,
        spawn: Optional[Callable[[Sequence[str], Dict[str, str]], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.count = count
        self.command = list(command or default_agent_command())
        self.respawn_delay = respawn_delay
        self.max_respawn_delay = max_respawn_delay
        self.max_rapid_failures = max_rapid_failures
        self.rapid_failure_window = rapid_failure_window
        self.env = dict(env if env is not None else os.environ)
        self._spawn = spawn or self._create_process
        self.clock = clock
        self.logger = logger or logging.getLogger("swarm.spawner")

        self.slots = [AgentSlot(i) for i in range(count)]
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(
        cls, config: Any, command: Optional[Sequence[str]] = None, logger: Optional[logging.Logger] = None
    ) -> "Supervisor":
        return cls(
            count=config.agents,
            command=command,
            respawn_delay=config.respawn_delay,
            max_respawn_delay=config.max_respawn_delay,
            max_rapid_failures=config.max_rapid_failures,
            rapid_failure_window=config.rapid_failure_window,
            logger=logger,
        )

    @staticmethod
    async def _create_process(command: Sequence[str], env: Dict[str, str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(*command, env=env)

    def next_respawn_delay(self, slot: AgentSlot, exit_code: int) -> Optional[float]:
        """Delay before respawning ``slot`` after it exited with ``exit_code``; None means leave it down."""
        if self._stopping.is_set() or exit_code == EXIT_OK:
            return None
        if exit_code == EXIT_CONFIG_ERROR:
            self.logger.error(f"{slot.label} exited with a configuration error; not respawning")
            slot.abandoned = True
            return None

        now = self.clock()
        slot.failures.append(now)
        while slot.failures and now - slot.failures[0] > self.rapid_failure_window:
            slot.failures.popleft()
        if len(slot.failures) >= self.max_rapid_failures:
            self.logger.error(
                f"{slot.label} failed {len(slot.failures)} times within {self.rapid_failure_window:.0f}s; giving up"
            )
            slot.abandoned = True
            return None
        return min(self.respawn_delay * 2 ** (len(slot.failures) - 1), self.max_respawn_delay)

    async def _supervise(self, slot: AgentSlot) -> None:
        while not self._stopping.is_set():
            try:
                slot.process = await self._spawn(self.command, self.env)
            except OSError as e:
                self.logger.error(f"{slot.label} could not be started: {e}")
                exit_code = EXIT_FAILURE
            else:
                slot.spawn_count += 1
                verb = "spawned" if slot.spawn_count == 1 else "respawned"
                self.logger.info(f"{slot.label} {verb} (PID: {slot.process.pid})")
                exit_code = await slot.process.wait()
                slot.process = None

            slot.last_exit_code = exit_code
            self.logger.warning(f"{slot.label} exited with code {exit_code}")
            delay = self.next_respawn_delay(slot, exit_code)
            if delay is None:
                return
            self.logger.info(f"Respawning {slot.label} in {delay:.0f}s")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)

    async def start(self) -> None:
        self.logger.info(f"Spawning {self.count} agents...")
        self._tasks = [asyncio.create_task(self._supervise(slot), name=slot.label) for slot in self.slots]

    async def wait(self) -> None:
        """Block until every slot has finished for good."""
        await asyncio.gather(*self._tasks)

    async def run(self) -> None:
        await self.start()
        await self.wait()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop respawning, SIGTERM every child and wait for them to exit."""
        self.logger.info("Stopping all agents...")
        self._stopping.set()
        for slot in self.slots:
            if slot.process is not None and slot.process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    slot.process.send_signal(signal.SIGTERM)
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for slot in self.slots:
                if slot.process is not None and slot.process.returncode is None:
                    self.logger.warning(f"{slot.label} did not exit after SIGTERM; killing")
                    with contextlib.suppress(ProcessLookupError):
                        slot.process.kill()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info("All agents stopped")
