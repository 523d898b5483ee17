"""Realtime gateway — WebSocket client registry, subscriptions, delivery and liveness."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import jwt
from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

from anvil.core.auth import decode_token
from anvil.daemon.scheduler import ControlLoops
from anvil.realtime.messages import (
    InvalidMessage,
    PingMessage,
    PongMessage,
    SubscribeMessage,
    UnsubscribeMessage,
    error_message,
    parse_client_message,
    server_message,
    timestamp,
)

logger = logging.getLogger("anvil.realtime.gateway")

WILDCARD = "*"
LIVENESS_JOB = "liveness"


def _generate_client_id() -> str:
    return f"ws-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass
class RealtimeClient:
    id: str
    websocket: WebSocket
    user_id: str | None = None
    is_alive: bool = True
    subscriptions: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def wants(self, channel: str) -> bool:
        return channel in self.subscriptions or WILDCARD in self.subscriptions

    def info(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "authenticated": self.authenticated,
            "is_alive": self.is_alive,
            "subscriptions": sorted(self.subscriptions),
            "connected_at": self.connected_at.isoformat(),
        }


class RealtimeGateway:
    """Owns every live WebSocket connection.

    Lifecycle of a client:
    - connect: accept, authenticate from the ``token`` query parameter
      (failure leaves the client connected but anonymous), send ``connection``
    - messages: ping / pong / subscribe / unsubscribe, anything else is an error
    - liveness: every ``ping_interval`` a client that did not answer the
      previous ping is terminated, every other client is pinged again
    - stop: everything still open is closed with 1000
    """

    def __init__(self, jwt_secret: str, jwt_algorithm: str = "HS256", ping_interval: float = 30.0):
        self._jwt_secret = jwt_secret
        self._jwt_algorithm = jwt_algorithm
        self.ping_interval = ping_interval
        self._clients: dict[str, RealtimeClient] = {}
        self._loops = ControlLoops("realtime-gateway")

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def has_client(self, client_id: str) -> bool:
        return client_id in self._clients

    def clients_info(self) -> list[dict]:
        return [c.info() for c in self._clients.values()]

    # ─── Lifecycle ───

    def start(self) -> None:
        if self._loops.running:
            return
        self._loops.start()
        self._loops.add_interval_job(LIVENESS_JOB, self.check_liveness, seconds=self.ping_interval)
        logger.info(f"Realtime gateway started (ping every {self.ping_interval}s)")

    async def stop(self) -> None:
        self._loops.stop()
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            if not client.is_open:
                continue
            try:
                await client.websocket.close(code=status.WS_1000_NORMAL_CLOSURE, reason="Server shutting down")
            except Exception as e:
                logger.warning(f"Failed to close {client.id} on shutdown: {e}")
        logger.info(f"Realtime gateway stopped ({len(clients)} client(s) closed)")

    # ─── Connections ───

    def authenticate(self, token: str | None) -> str | None:
        """Return the token subject, or None when absent or invalid."""
        if not token:
            return None
        try:
            return decode_token(token, self._jwt_secret, self._jwt_algorithm)
        except jwt.InvalidTokenError as e:
            logger.warning(f"WebSocket authentication failed: {e}")
            return None

    async def connect(self, websocket: WebSocket, token: str | None = None) -> RealtimeClient:
        await websocket.accept()
        client = RealtimeClient(
            id=_generate_client_id(),
            websocket=websocket,
            user_id=self.authenticate(token),
        )
        self._clients[client.id] = client
        logger.info(
            f"WebSocket client connected: {client.id} "
            f"(user={client.user_id}, total={self.client_count})"
        )

        await self._send(
            client,
            server_message(
                "connection",
                {
                    "clientId": client.id,
                    "authenticated": client.authenticated,
                    "timestamp": timestamp(),
                },
            ),
        )
        return client

    def disconnect(self, client_id: str) -> bool:
        client = self._clients.pop(client_id, None)
        if client is None:
            return False
        logger.info(f"WebSocket client disconnected: {client_id} (total={self.client_count})")
        return True

    async def serve(self, websocket: WebSocket, token: str | None = None) -> None:
        """Run one connection until the peer goes away."""
        client = await self.connect(websocket, token)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handle_message(client, raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(client.id)

    async def handle_message(self, client: RealtimeClient, raw: str | bytes) -> None:
        try:
            message = parse_client_message(raw)
        except InvalidMessage as e:
            await self._send(client, error_message(str(e)))
            return

        if isinstance(message, PingMessage):
            await self._send(client, server_message("pong", {"timestamp": timestamp()}))
        elif isinstance(message, PongMessage):
            client.is_alive = True
        elif isinstance(message, SubscribeMessage):
            channel = message.data.channel
            client.subscriptions.add(channel)
            await self._send(client, server_message("subscribed", {"channel": channel}))
            logger.debug(f"Client {client.id} subscribed to {channel}")
        elif isinstance(message, UnsubscribeMessage):
            channel = message.data.channel
            client.subscriptions.discard(channel)
            await self._send(client, server_message("unsubscribed", {"channel": channel}))
        else:
            await self._send(client, error_message(f"Unknown message type: {message.type}"))

    # ─── Delivery ───

    async def broadcast(self, channel: str, data) -> int:
        """Send to every open client subscribed to ``channel`` or ``*``. Returns recipients."""
        payload = server_message("broadcast", data, channel=channel, stamped=True)
        targets = [c for c in self._clients.values() if c.wants(channel) and c.is_open]
        count = 0
        for client in targets:
            if await self._send(client, payload):
                count += 1
        logger.debug(f"Broadcast on {channel} reached {count} client(s)")
        return count

    async def send_to_user(self, user_id: str, data) -> int:
        """Send to every open connection of ``user_id``. Returns recipients."""
        payload = server_message("direct", data, stamped=True)
        targets = [c for c in self._clients.values() if c.user_id == user_id and c.is_open]
        count = 0
        for client in targets:
            if await self._send(client, payload):
                count += 1
        return count

    # ─── Liveness ───

    async def check_liveness(self) -> list[str]:
        """One liveness tick. Returns the ids of clients that were evicted."""
        evicted = []
        for client in list(self._clients.values()):
            if client.id not in self._clients:
                continue
            if not client.is_alive:
                self._clients.pop(client.id, None)
                evicted.append(client.id)
                logger.info(f"WebSocket client {client.id} missed ping, terminating")
                await self._terminate(client, "Heartbeat timeout")
                continue
            client.is_alive = False
            await self._send(client, server_message("ping", {"timestamp": timestamp()}))
        return evicted

    # ─── Internals ───

    async def _send(self, client: RealtimeClient, payload: str) -> bool:
        if not client.is_open:
            return False
        try:
            await client.websocket.send_text(payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to {client.id}, evicting: {e}")
            self._clients.pop(client.id, None)
            await self._terminate(client, "Send failed")
            return False

    async def _terminate(self, client: RealtimeClient, reason: str) -> None:
        if client.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await client.websocket.close(code=status.WS_1001_GOING_AWAY, reason=reason)
        except Exception as e:
            logger.debug(f"Close of {client.id} failed: {e}")
