#!/usr/bin/env python3
"""
TeamSpeak live roster - Entry Point
Socket.IO + WebSocket push, rate limiting, ServerQuery upstream link
"""
import logging
import socket
import time
from collections import defaultdict

from aiohttp import web

from roster.api import ROSTER_KEY, api_clients, api_health, attach_socketio, ws_clients
from roster.config import Settings, load_settings
from roster.service import RosterService

logger = logging.getLogger("ts_roster")

# Push channels are long-lived and not counted against the HTTP rate limit
UNLIMITED_PREFIXES = ("/socket.io", "/ws/")


class RateLimiter:
    """Sliding one-minute window of request times per IP"""

    def __init__(self, limit: int, window: float = 60.0):
        self.limit = limit
        self.window = window
        self._hits = defaultdict(list)
        self._last_sweep = 0.0

    def __len__(self):
        return len(self._hits)

    def allow(self, ip, now: float) -> bool:
        if now - self._last_sweep >= self.window:
            self.sweep(now)

        # Clean old entries
        recent = [t for t in self._hits.get(ip, ()) if now - t < self.window]
        if len(recent) >= self.limit:
            self._hits[ip] = recent
            return False
        recent.append(now)
        self._hits[ip] = recent
        return True

    def sweep(self, now: float) -> None:
        """Forget IPs with no request inside the window"""
        self._last_sweep = now
        for ip in [ip for ip, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]:
            del self._hits[ip]


def make_rate_limit_middleware(limiter: RateLimiter):
    """Simple rate limiting: `limiter.limit` requests per minute per IP"""

    @web.middleware
    async def rate_limit_middleware(request, handler):
        if request.path.startswith(UNLIMITED_PREFIXES):
            return await handler(request)

        ip = request.remote
        if not limiter.allow(ip, time.time()):
            logger.warning(f"Rate limit exceeded for {ip}")
            return web.json_response(
                {"ok": False, "error": "Rate limit exceeded"},
                status=429
            )

        return await handler(request)

    return rate_limit_middleware


def create_app(settings: Settings = None, with_link: bool = True) -> web.Application:
    """Create and configure the aiohttp application"""
    settings = settings or load_settings()
    limiter = RateLimiter(settings.rate_limit)
    app = web.Application(middlewares=[make_rate_limit_middleware(limiter)])
    app[ROSTER_KEY] = RosterService(settings)

    app.router.add_get("/clients", api_clients)
    app.router.add_get("/health", api_health)

    # WebSocket for real-time roster updates
    app.router.add_get("/ws/clients", ws_clients)
    attach_socketio(app, settings.cors_origins)

    async def start_service(app):
        await app[ROSTER_KEY].start(with_link=with_link)

    async def stop_service(app):
        await app[ROSTER_KEY].stop()

    app.on_startup.append(start_service)
    app.on_cleanup.append(stop_service)

    logger.info("🎧 Roster server ready • Socket.IO + WebSocket enabled")
    return app


def get_local_ip():
    """Get local network IP address"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "localhost"


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    app = create_app(settings)
    local_ip = get_local_ip()

    logger.info(f"🚀 Starting server on {settings.host}:{settings.port}")
    logger.info(f"💡 Viewers connect to: http://{local_ip}:{settings.port}")

    web.run_app(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
