from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

from .bus import CHANNELS


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    plan_ids: set[str] = field(default_factory=set)


def _event_plan_id(event: dict[str, Any]) -> str:
    payload = event.get("payload")
    if isinstance(payload, dict) and payload.get("plan_id"):
        return str(payload["plan_id"])
    return str(event.get("entity_id") or "")


class WebSocketHub:
    """Fan bus events out to websocket observers subscribed by channel and plan."""

    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    async def handle_connection(self, websocket: WebSocket) -> None:
        # Remember the active event loop so poller threads can publish safely.
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await websocket.send_text(
                json.dumps({"channel": "system", "type": "connected", "payload": {"channels": sorted(CHANNELS)}})
            )
            while True:
                message = json.loads(await websocket.receive_text())
                action = message.get("action")
                channels = set(message.get("channels", []))
                plan_ids = {str(p).strip() for p in message.get("plan_ids", []) if str(p).strip()}
                if action == "subscribe":
                    client.channels |= channels & CHANNELS
                    client.plan_ids |= plan_ids
                elif action == "unsubscribe":
                    client.channels -= channels
                    client.plan_ids -= plan_ids
                elif action == "ping":
                    await websocket.send_text(json.dumps({"channel": "system", "type": "pong", "payload": {}}))
                    continue
                else:
                    continue
                await websocket.send_text(
                    json.dumps(
                        {
                            "channel": "system",
                            "type": f"{action}d",
                            "payload": {"channels": sorted(client.channels), "plan_ids": sorted(client.plan_ids)},
                        }
                    )
                )
        except Exception:
            pass
        finally:
            self._clients.pop(cid, None)

    async def publish(self, event: dict[str, Any]) -> None:
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter}, default=str)
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if event.get("channel") not in client.channels:
                continue
            if client.plan_ids and _event_plan_id(event) not in client.plan_ids:
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
