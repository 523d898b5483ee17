"""Realtime endpoints — the /ws socket plus REST hooks for pushing messages."""

from typing import Any

from fastapi import APIRouter, Query, WebSocket
from pydantic import BaseModel, Field

from anvil.api.deps import ApiKey, Gateway

router = APIRouter(prefix="/realtime", tags=["realtime"])
ws_router = APIRouter()


class BroadcastRequest(BaseModel):
    channel: str = Field(min_length=1)
    data: Any = None


class DirectMessage(BaseModel):
    data: Any = None


@ws_router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: str | None = Query(None)):
    """WebSocket endpoint; ``?token=`` authenticates, anonymous clients are allowed."""
    gateway = websocket.app.state.gateway
    await gateway.serve(websocket, token=token)


@router.get("/clients")
async def list_clients(gateway: Gateway, _: ApiKey):
    clients = gateway.clients_info()
    return {"clients": clients, "total": len(clients)}


@router.post("/broadcast")
async def broadcast(data: BroadcastRequest, gateway: Gateway, _: ApiKey):
    recipients = await gateway.broadcast(data.channel, data.data)
    return {"channel": data.channel, "recipients": recipients}


@router.post("/users/{user_id}")
async def send_to_user(user_id: str, data: DirectMessage, gateway: Gateway, _: ApiKey):
    recipients = await gateway.send_to_user(user_id, data.data)
    return {"user_id": user_id, "recipients": recipients}
