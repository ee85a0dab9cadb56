"""Producer-side connection to the broadcast hub."""
from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException


def reconnect_delay(attempt: int, max_delay: float = 30.0, base: float = 1.0) -> float:
    """Backoff before reconnect ``attempt`` (1-based): ``base * 2**attempt`` capped at ``max_delay``."""
    return min(base * (2 ** attempt), max_delay)


def now_ms() -> int:
    return int(time.time() * 1000)


class LiveStreamClient:
    """Best-effort stream of frames and lifecycle events for one agent.

    Streaming is a side channel: every failure here is logged and swallowed so
    the agent keeps executing tests without a hub.
    """

    def __init__(
        self,
        agent_id: str,
        agent_name: str,
        url: str = "ws://localhost:3001/agent",
        max_reconnect_attempts: int = 5,
        max_reconnect_delay: float = 30.0,
        logger: Optional[logging.Logger] = None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.url = url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.max_reconnect_delay = max_reconnect_delay
        self.logger = logger or logging.getLogger("swarm.live_stream")
        self._connect = connect or websockets.connect

        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self.reconnect_attempts = 0
        self.gave_up = False

    @classmethod
    def from_config(
        cls, agent_id: str, agent_name: str, config: Any, logger: Optional[logging.Logger] = None
    ) -> "LiveStreamClient":
        return cls(
            agent_id,
            agent_name,
            url=config.url,
            max_reconnect_attempts=config.max_reconnect_attempts,
            max_reconnect_delay=config.max_reconnect_delay,
            logger=logger,
        )

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def start(self) -> None:
        """Start the background connection task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"live-stream-{self.agent_name}")

    async def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                async with self._connect(self.url, open_timeout=5) as ws:
                    await ws.send(json.dumps(self._register_message()))
                    self._ws = ws
                    self.reconnect_attempts = 0
                    self.logger.info(f"Live stream connected: {self.agent_name}")
                    async for _ in ws:
                        # The hub never addresses producers; inbound messages are ignored.
                        pass
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                if self.reconnect_attempts == 0:
                    self.logger.warning(f"Live stream connection error (continuing without streaming): {e}")
                else:
                    self.logger.debug(f"Live stream connection error: {e}")
            finally:
                self._ws = None

            if self._stopped.is_set():
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self.gave_up = True
                self.logger.warning("Live stream gave up after %d reconnect attempts", self.reconnect_attempts)
                break

            self.reconnect_attempts += 1
            delay = reconnect_delay(self.reconnect_attempts, self.max_reconnect_delay)
            self.logger.debug(f"Live stream reconnecting in {delay:.0f}s (attempt {self.reconnect_attempts})")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)

    def _register_message(self) -> Dict[str, Any]:
        return {"type": "register", "agentId": self.agent_id, "agentName": self.agent_name}

    async def _send(self, payload: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(payload))
            return True
        except (ConnectionClosed, OSError) as e:
            self.logger.debug(f"Live stream send failed: {e}")
            return False

    async def send_frame(self, test_id: Optional[str], image: bytes) -> bool:
        return await self._send(
            {
                "type": "frame",
                "agentId": self.agent_id,
                "agentName": self.agent_name,
                "testId": test_id,
                "timestampMs": now_ms(),
                "imageBase64": base64.b64encode(image).decode("ascii"),
            }
        )

    async def send_event(self, event_type: str, **fields: Any) -> bool:
        payload = {
            "type": event_type,
            "agentId": self.agent_id,
            "agentName": self.agent_name,
            "timestampMs": now_ms(),
        }
        payload.update(fields)
        return await self._send(payload)

    async def stop(self) -> None:
        self._stopped.set()
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._ws = None
