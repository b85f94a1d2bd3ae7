# buildpipe/fanout.py
"""Live progress push to connected observers.

Best-effort: no buffering, no replay, no retries. Sends to all subscribers run
concurrently; a connection that fails a send, or does not take it within the
send timeout, is dropped from the registry.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from websockets.exceptions import ConnectionClosed

from buildpipe.models import Completed, LogAppended, ProgressEvent, StatusChanged, parse_event

logger = logging.getLogger("buildpipe.fanout")

SEND_TIMEOUT_S = 5.0


@dataclass
class Subscription:
    client_id: str
    build_id: Optional[str]
    connection: Any  # anything with ``async send(str)``

    def wants(self, build_id: str) -> bool:
        return self.build_id is None or self.build_id == build_id


def _ts(evt) -> str:
    return evt.at.isoformat()


def frame_for(evt: ProgressEvent) -> Dict[str, Any]:
    if isinstance(evt, StatusChanged):
        return {"type": "status", "buildId": evt.build_id, "status": evt.phase.value,
                "message": evt.message, "time": _ts(evt)}
    if isinstance(evt, LogAppended):
        return {"type": "log", "buildId": evt.build_id, "log": evt.line, "time": _ts(evt)}
    if isinstance(evt, Completed):
        return {"type": "completion", "buildId": evt.build_id, "status": evt.outcome.value,
                "artifactUrl": evt.artifact_reference or "", "duration": evt.duration, "time": _ts(evt)}
    raise TypeError(f"not a progress event: {type(evt).__name__}")


class FanOut:
    """Registry of live subscriptions, keyed by client id. Used from the event loop only."""

    def __init__(self, topic_kinds: Optional[Dict[str, str]] = None, send_timeout: float = SEND_TIMEOUT_S):
        self.topic_kinds = topic_kinds or {}
        self.send_timeout = send_timeout
        self._subs: Dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subs)

    def subscribe(self, client_id: str, connection, build_id: Optional[str] = None) -> Subscription:
        if not client_id:
            raise ValueError("client_id is required")
        sub = Subscription(client_id, build_id or None, connection)
        if client_id in self._subs:
            logger.info("Client %s re-subscribed; replacing previous subscription", client_id)
        self._subs[client_id] = sub
        logger.info("Client %s subscribed (build=%s); %d connected", client_id, build_id or "*", len(self._subs))
        return sub

    def unsubscribe(self, client_id: str, connection=None) -> None:
        """Drop a client. With ``connection``, only if it still owns the slot."""
        sub = self._subs.get(client_id)
        if sub is None:
            return
        if connection is not None and sub.connection is not connection:
            return
        del self._subs[client_id]
        logger.info("Client %s unsubscribed; %d connected", client_id, len(self._subs))

    def matching(self, build_id: str) -> List[Subscription]:
        return [s for s in self._subs.values() if s.wants(build_id)]

    async def on_progress_event(self, evt: ProgressEvent) -> int:
        """Push one event to every matching subscriber. Returns how many sends succeeded."""
        targets = self.matching(evt.build_id)
        if not targets:
            return 0
        text = json.dumps(frame_for(evt))
        results = await asyncio.gather(*(self._send(sub, text) for sub in targets))
        return sum(results)

    async def _send(self, sub: Subscription, text: str) -> bool:
        try:
            await asyncio.wait_for(sub.connection.send(text), self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Push to client %s timed out after %ss; dropping subscription",
                           sub.client_id, self.send_timeout)
        except Exception as e:
            logger.warning("Push to client %s failed (%s); dropping subscription", sub.client_id, e)
        self.unsubscribe(sub.client_id, sub.connection)
        return False

    async def handle(self, topic: str, key: str, payload) -> None:
        evt = parse_event(payload, self.topic_kinds.get(topic))
        await self.on_progress_event(evt)


# ── WebSocket surface ──────────────────────────────────────────────────────────

def parse_ws_path(path: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Split ``/ws?clientId=..&buildId=..`` into (path, client_id, build_id)."""
    parts = urlsplit(path)
    query = parse_qs(parts.query)
    client_id = (query.get("clientId") or [""])[0].strip() or None
    build_id = (query.get("buildId") or [""])[0].strip() or None
    return parts.path, client_id, build_id


async def process_request(connection, request):
    """Refuse anything but ``/ws`` with a client id before the upgrade."""
    path, client_id, _ = parse_ws_path(request.path)
    if path != "/ws":
        return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
    if client_id is None:
        return connection.respond(HTTPStatus.BAD_REQUEST, "clientId is required\n")
    return None


async def serve_client(fanout: FanOut, websocket) -> None:
    """Register the connection for its lifetime."""
    _, client_id, build_id = parse_ws_path(websocket.request.path)
    fanout.subscribe(client_id, websocket, build_id)
    try:
        # Clients send nothing; iterate until the connection closes.
        async for _ in websocket:
            pass
    except ConnectionClosed:
        pass
    finally:
        fanout.unsubscribe(client_id, websocket)
