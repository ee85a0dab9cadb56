"""Unit tests for the agent supervisor."""
from __future__ import annotations

import asyncio
import signal

from spawner import EXIT_CONFIG_ERROR, AgentSlot, Supervisor, default_agent_command


class FakeProcess:
    def __init__(self, pid: int, exit_code=None):
        self.pid = pid
        self.returncode = None
        self.exit_code = exit_code
        self.signals = []
        self.killed = False
        self._signalled = asyncio.Event()

    async def wait(self):
        if self.exit_code is None:
            await self._signalled.wait()
            self.returncode = -signal.SIGTERM
        else:
            self.returncode = self.exit_code
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        self._signalled.set()

    def kill(self):
        self.killed = True
        self._signalled.set()


class FakeSpawner:
    """Hands out processes that exit with the queued codes (None blocks until signalled)."""

    def __init__(self, exit_codes):
        self.exit_codes = list(exit_codes)
        self.processes = []
        self.commands = []

    async def __call__(self, command, env):
        self.commands.append(list(command))
        process = FakeProcess(1000 + len(self.processes), self.exit_codes.pop(0))
        self.processes.append(process)
        return process


def _supervisor(spawner, count=1, **kwargs):
    kwargs.setdefault("respawn_delay", 0)
    return Supervisor(count, command=["agent"], env={}, spawn=spawner, **kwargs)


class TestSupervise:
    def test_crash_is_respawned_until_clean_exit(self):
        spawner = FakeSpawner([1, 0])
        supervisor = _supervisor(spawner)

        asyncio.run(supervisor.run())

        (slot,) = supervisor.slots
        assert slot.spawn_count == 2
        assert slot.last_exit_code == 0
        assert not slot.abandoned
        assert spawner.commands == [["agent"], ["agent"]]

    def test_config_error_is_never_respawned(self):
        spawner = FakeSpawner([EXIT_CONFIG_ERROR])
        supervisor = _supervisor(spawner)

        asyncio.run(supervisor.run())

        (slot,) = supervisor.slots
        assert slot.spawn_count == 1
        assert slot.abandoned

    def test_rapid_failures_trip_the_breaker(self):
        spawner = FakeSpawner([1, 1, 1, 1, 1])
        supervisor = _supervisor(spawner, max_rapid_failures=3, rapid_failure_window=60, clock=lambda: 100.0)

        asyncio.run(supervisor.run())

        (slot,) = supervisor.slots
        assert slot.spawn_count == 3
        assert slot.abandoned

    def test_each_slot_is_supervised(self):
        spawner = FakeSpawner([0, 0, 0])
        supervisor = _supervisor(spawner, count=3)

        asyncio.run(supervisor.run())

        assert [s.spawn_count for s in supervisor.slots] == [1, 1, 1]
        assert [s.label for s in supervisor.slots] == ["Agent 1", "Agent 2", "Agent 3"]

    def test_stop_terminates_children_without_respawn(self):
        spawner = FakeSpawner([None, None])
        supervisor = _supervisor(spawner, count=2)

        async def scenario():
            await supervisor.start()
            while len(spawner.processes) < 2:
                await asyncio.sleep(0.01)
            await supervisor.stop(timeout=1)

        asyncio.run(scenario())

        assert len(spawner.processes) == 2
        assert all(p.signals == [signal.SIGTERM] for p in spawner.processes)
        assert not any(p.killed for p in spawner.processes)
        assert all(s.spawn_count == 1 for s in supervisor.slots)


class TestRespawnDelay:
    def test_backoff_doubles_up_to_cap(self):
        now = [0.0]
        supervisor = Supervisor(
            1,
            command=["agent"],
            env={},
            respawn_delay=5,
            max_respawn_delay=30,
            max_rapid_failures=10,
            rapid_failure_window=100,
            clock=lambda: now[0],
        )
        slot = AgentSlot(0)
        assert [supervisor.next_respawn_delay(slot, 1) for _ in range(4)] == [5, 10, 20, 30]

    def test_failures_outside_window_are_forgotten(self):
        now = [0.0]
        supervisor = Supervisor(
            1, command=["agent"], env={}, respawn_delay=5, rapid_failure_window=10, clock=lambda: now[0]
        )
        slot = AgentSlot(0)
        supervisor.next_respawn_delay(slot, 1)
        supervisor.next_respawn_delay(slot, 1)
        now[0] = 100.0
        assert supervisor.next_respawn_delay(slot, 1) == 5

    def test_clean_exit_is_final(self):
        supervisor = Supervisor(1, command=["agent"], env={})
        assert supervisor.next_respawn_delay(AgentSlot(0), 0) is None


def test_default_command_runs_the_agent_subcommand():
    command = default_agent_command(["--config", "swarm.yaml"])
    assert command[1:] == ["-m", "cli", "--config", "swarm.yaml", "agent"]
