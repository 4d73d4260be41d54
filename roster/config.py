"""
Runtime configuration, resolved once from environment variables
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

MIN_VIEWER_QUEUE = 2


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Resolved settings for one roster service instance"""
    host: str = "0.0.0.0"
    port: int = 8080

    # ServerQuery link to the voice server
    query_host: str = "127.0.0.1"
    query_port: int = 10011
    query_user: str = "serveradmin"
    query_password: Optional[str] = None
    server_id: int = 1
    query_nickname: Optional[str] = None
    resync_interval: float = 10.0
    reconnect_base: float = 1.0
    reconnect_max: float = 30.0

    # Roster policy and viewer channel
    reserved_names: Tuple[str, ...] = ("serveradmin",)
    cors_origins: str = "*"
    viewer_queue_size: int = 64
    rate_limit: int = 100
    log_level: str = "INFO"

    def __post_init__(self):
        # A new viewer gets status and clients queued before its drain task runs
        if self.viewer_queue_size < MIN_VIEWER_QUEUE:
            raise ValueError(
                f"ROSTER_VIEWER_QUEUE must be at least {MIN_VIEWER_QUEUE}, got {self.viewer_queue_size}")

    @property
    def upstream_configured(self) -> bool:
        return bool(self.query_host and self.query_password)


def load_settings(environ=None) -> Settings:
    """Build Settings from the process environment (or a given mapping)"""
    env = os.environ if environ is None else environ

    def get(name, default):
        value = env.get(name)
        return default if value in (None, "") else value

    return Settings(
        host=get("SERVER_HOST", "0.0.0.0"),
        port=int(get("PORT", 8080)),
        query_host=get("TS_QUERY_HOST", "127.0.0.1"),
        query_port=int(get("TS_QUERY_PORT", 10011)),
        query_user=get("TS_QUERY_USER", "serveradmin"),
        query_password=get("TS_QUERY_PASSWORD", None),
        server_id=int(get("TS_SERVER_ID", 1)),
        query_nickname=get("TS_QUERY_NICKNAME", None),
        resync_interval=float(get("TS_RESYNC_INTERVAL", 10.0)),
        reconnect_base=float(get("TS_RECONNECT_BASE", 1.0)),
        reconnect_max=float(get("TS_RECONNECT_MAX", 30.0)),
        reserved_names=_csv(get("ROSTER_RESERVED_NAMES", "serveradmin")),
        cors_origins=get("ROSTER_CORS_ORIGINS", "*"),
        viewer_queue_size=int(get("ROSTER_VIEWER_QUEUE", 64)),
        rate_limit=int(get("ROSTER_RATE_LIMIT", 100)),
        log_level=get("LOG_LEVEL", "INFO").upper(),
    )
