"""Broadcast hub: fans producer agents' frames and events out to observers."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import uvicorn
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket


# ─────────────────────────────────────────────────────────────────────────────
# Wire messages
# ─────────────────────────────────────────────────────────────────────────────


class _Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    agentId: str = Field(min_length=1)


class RegisterMessage(_Message):
    agentName: str = Field(min_length=1)


class FrameMessage(_Message):
    testId: Optional[str] = None
    timestampMs: int
    imageBase64: str = Field(min_length=1)


class TestStartedMessage(_Message):
    __test__ = False

    testId: str = Field(min_length=1)


class TestCompletedMessage(_Message):
    __test__ = False

    testId: str = Field(min_length=1)
    status: str = Field(min_length=1)
    durationMs: Optional[int] = None


_MESSAGE_MODELS = {
    "register": RegisterMessage,
    "frame": FrameMessage,
    "test_started": TestStartedMessage,
    "test_completed": TestCompletedMessage,
}


def validate_message(raw: str) -> Dict[str, Any]:
    """Parse and check one producer message; raises ValueError when malformed."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("message must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise ValueError("message type must be a string")
    model = _MESSAGE_MODELS.get(data.get("type"), _Message)
    try:
        model.model_validate(data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Roster
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ProducerEntry:
    agent_id: str
    agent_name: str
    websocket: Any
    connected_at: float = field(default_factory=time.time)


class HubRoster:
    """Registered producers and open observers; only the hub's handlers mutate it."""

    def __init__(self) -> None:
        self._producers: Dict[str, ProducerEntry] = {}
        self._observers: Set[Any] = set()

    def add_producer(self, entry: ProducerEntry) -> Optional[ProducerEntry]:
        """Register a producer, returning any entry it replaced."""
        previous = self._producers.get(entry.agent_id)
        self._producers[entry.agent_id] = entry
        return previous

    def remove_producer(self, agent_id: str, websocket: Any) -> bool:
        """Drop the producer only if ``websocket`` is still the one registered under ``agent_id``."""
        entry = self._producers.get(agent_id)
        if entry is None or entry.websocket is not websocket:
            return False
        del self._producers[agent_id]
        return True

    def producers(self) -> List[ProducerEntry]:
        return list(self._producers.values())

    def add_observer(self, websocket: Any) -> None:
        self._observers.add(websocket)

    def remove_observer(self, websocket: Any) -> None:
        self._observers.discard(websocket)

    def observers(self) -> List[Any]:
        return list(self._observers)

    @property
    def producer_count(self) -> int:
        return len(self._producers)

    @property
    def observer_count(self) -> int:
        return len(self._observers)


# ─────────────────────────────────────────────────────────────────────────────
# Hub
# ─────────────────────────────────────────────────────────────────────────────


class BroadcastHub:
    """Two roles on one server: ``/agent`` producers and observers on any other path."""

    def __init__(self, send_timeout: float = 2.0, logger: Optional[logging.Logger] = None):
        self.send_timeout = send_timeout
        self.logger = logger or logging.getLogger("swarm.hub")
        self.roster = HubRoster()
        self.app = self._build_app()

    def _build_app(self) -> Starlette:
        routes = [
            Route("/health", endpoint=self.handle_health, methods=["GET"]),
            Route("/api/agents", endpoint=self.handle_agents, methods=["GET"]),
            WebSocketRoute("/agent", endpoint=self.handle_producer),
            WebSocketRoute("/{path:path}", endpoint=self.handle_observer),
        ]
        return Starlette(routes=routes)

    def agent_list(self) -> Dict[str, Any]:
        return {
            "type": "agent_list",
            "agents": [
                {"type": "agent_connected", "agentId": p.agent_id, "agentName": p.agent_name}
                for p in self.roster.producers()
            ],
        }

    async def handle_health(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {"status": "ok", "agents": self.roster.producer_count, "viewers": self.roster.observer_count}
        )

    async def handle_agents(self, request: Request) -> JSONResponse:
        return JSONResponse(
            [{"id": p.agent_id, "name": p.agent_name, "connected": True} for p in self.roster.producers()]
        )

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send ``message`` to every open observer; observers that fail or stall are dropped and closed."""
        observers = self.roster.observers()
        if not observers:
            return 0
        data = json.dumps(message)
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(data), timeout=self.send_timeout) for ws in observers),
            return_exceptions=True,
        )
        delivered = 0
        dropped = []
        for ws, result in zip(observers, results):
            if isinstance(result, BaseException):
                self.logger.warning(f"Dropping observer after failed send: {result!r}")
                self.roster.remove_observer(ws)
                dropped.append(ws)
            else:
                delivered += 1
        if dropped:
            await asyncio.gather(*(self._close_observer(ws) for ws in dropped))
        return delivered

    async def _close_observer(self, websocket: Any) -> None:
        # A dropped observer is closed so it sees the disconnect and can reconnect.
        with contextlib.suppress(Exception):
            await asyncio.wait_for(websocket.close(), timeout=self.send_timeout)

    async def handle_producer(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.logger.info("New agent connection")
        entry: Optional[ProducerEntry] = None
        try:
            while True:
                raw = await _receive(websocket)
                if raw is None:
                    break
                try:
                    message = validate_message(raw)
                except ValueError as e:
                    self.logger.warning(f"Dropping malformed agent message: {e}")
                    continue

                if message["type"] == "register":
                    if entry is not None:
                        self.roster.remove_producer(entry.agent_id, websocket)
                    entry = ProducerEntry(message["agentId"], message["agentName"], websocket)
                    self.roster.add_producer(entry)
                    self.logger.info(f"Agent registered for streaming: {entry.agent_name}")
                    await self.broadcast(
                        {"type": "agent_connected", "agentId": entry.agent_id, "agentName": entry.agent_name}
                    )
                    continue

                if entry is None:
                    self.logger.warning(f"Ignoring {message['type']} from unregistered connection")
                    continue
                if message["agentId"] != entry.agent_id:
                    self.logger.warning(
                        f"Dropping {message['type']} for {message['agentId']} sent by {entry.agent_id}"
                    )
                    continue

                await self.broadcast(message)
        finally:
            if entry is not None and self.roster.remove_producer(entry.agent_id, websocket):
                self.logger.info(f"Agent disconnected from streaming: {entry.agent_name}")
                await self.broadcast(
                    {"type": "agent_disconnected", "agentId": entry.agent_id, "agentName": entry.agent_name}
                )

    async def handle_observer(self, websocket: WebSocket) -> None:
        await websocket.accept()
        await websocket.send_text(json.dumps(self.agent_list()))
        self.roster.add_observer(websocket)
        self.logger.info(f"Viewer connected ({self.roster.observer_count} total)")
        try:
            while True:
                # Observers have nothing to say; reading only detects the close.
                if await _receive(websocket) is None:
                    break
        finally:
            self.roster.remove_observer(websocket)
            self.logger.info(f"Viewer disconnected ({self.roster.observer_count} remaining)")

    async def serve(self, host: str = "0.0.0.0", port: int = 3001) -> None:
        config = uvicorn.Config(self.app, host=host, port=int(port), log_level="info")
        server = uvicorn.Server(config)
        self.logger.info("Broadcast hub listening on ws://%s:%s (producers on /agent)", host, port)
        await server.serve()


async def _receive(websocket: WebSocket) -> Optional[str]:
    """Next text payload, or None once the peer has closed."""
    while True:
        event = await websocket.receive()
        if event["type"] == "websocket.disconnect":
            return None
        if event.get("text") is not None:
            return event["text"]
        if event.get("bytes") is not None:
            return event["bytes"].decode("utf-8", errors="replace")
