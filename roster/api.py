"""
HTTP, WebSocket and Socket.IO handlers for the roster service
"""
import hashlib
import json
import logging

import socketio
from aiohttp import web

from .service import RosterService

logger = logging.getLogger("ts_roster")

ROSTER_KEY = web.AppKey("roster", RosterService)

# ============================================================
# SESSION TRANSPORTS
# ============================================================

class WebSocketTransport:
    """Viewer on the plain WebSocket endpoint; frames are {"event", "data"}"""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws

    async def send(self, event, data):
        await self.ws.send_json({"event": event, "data": data})

    async def close(self):
        await self.ws.close()


class SocketIOTransport:
    """Viewer connected through Socket.IO"""

    def __init__(self, sio: socketio.AsyncServer, sid: str):
        self.sio = sio
        self.sid = sid

    async def send(self, event, data):
        await self.sio.emit(event, data, to=self.sid)

    async def close(self):
        await self.sio.disconnect(self.sid)


# ============================================================
# WEBSOCKET FOR REAL-TIME UPDATES
# ============================================================

async def ws_clients(request):
    """WebSocket endpoint pushing the roster to one viewer"""
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    hub = request.app[ROSTER_KEY].hub
    session = hub.connect(WebSocketTransport(ws))

    try:
        async for msg in ws:
            # Handle ping/pong for keepalive
            if msg.type == web.WSMsgType.TEXT:
                if msg.data == "ping":
                    await ws.send_str("pong")
            elif msg.type == web.WSMsgType.ERROR:
                logger.debug(f"WebSocket error: {ws.exception()!r}")
    finally:
        hub.disconnect(session)

    return ws


def attach_socketio(app: web.Application, cors_origins="*") -> socketio.AsyncServer:
    """Serve the roster over Socket.IO, the way the viewer page subscribes"""
    sio = socketio.AsyncServer(
        async_mode="aiohttp",
        cors_allowed_origins=cors_origins,
        always_connect=True,
        logger=False,
        engineio_logger=False,
    )

    @sio.event
    async def connect(sid, environ, auth=None):
        app[ROSTER_KEY].hub.connect(SocketIOTransport(sio, sid), session_id=sid)

    @sio.event
    async def disconnect(sid, reason=None):
        app[ROSTER_KEY].hub.disconnect(sid)

    sio.attach(app)
    return sio


# ============================================================
# ROSTER
# ============================================================

async def api_clients(request: web.Request) -> web.Response:
    """Current roster with ETag caching"""
    service = request.app[ROSTER_KEY]
    items = service.hub.clients_payload
    upstream = service.link_state.value

    content = json.dumps({"upstream": upstream, "clients": items}, sort_keys=True)
    etag = hashlib.md5(content.encode()).hexdigest()

    # if_none_match parses quoted and weak tags
    if any(tag.value in (etag, "*") for tag in request.if_none_match or ()):
        return web.Response(status=304)

    response = web.json_response({
        "ok": True,
        "upstream": upstream,
        "clients": items,
    })
    response.etag = etag
    response.headers["Cache-Control"] = "max-age=5"
    return response


async def api_health(request: web.Request) -> web.Response:
    service = request.app[ROSTER_KEY]
    return web.json_response({
        "ok": True,
        "upstream": service.link_state.value,
        "viewers": len(service.hub),
        "clients": len(service.hub.clients_payload),
    })
