"""
Viewer session registry and roster fan-out
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Sequence

from .config import MIN_VIEWER_QUEUE
from .normalize import snapshot_payload
from .state import ClientRecord
from .utils import generate_session_id

logger = logging.getLogger("ts_roster")

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class SessionTransport(Protocol):
    """Per-viewer channel a session pushes through"""

    async def send(self, event: str, data: Any) -> None: ...

    async def close(self) -> None: ...


class ViewerSession:
    """One subscribed viewer: an outbound queue drained by its own task"""

    def __init__(self, transport: SessionTransport, session_id: Optional[str] = None,
                 queue_size: int = 64):
        self.session_id = session_id or generate_session_id()
        self.transport = transport
        self.state = CONNECTED
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<ViewerSession {self.session_id} {self.state}>"

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    def push(self, event: str, data: Any) -> bool:
        """Queue a message for delivery. False if the session is stalled or gone."""
        if not self.connected:
            return False
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull:
            return False
        return True

    def start(self, on_failure) -> None:
        self._task = asyncio.ensure_future(self._drain(on_failure))

    async def _drain(self, on_failure):
        while True:
            event, data = await self._queue.get()
            try:
                await self.transport.send(event, data)
            except Exception as e:
                logger.warning(f"Push to viewer {self.session_id} failed: {e!r}")
                on_failure(self)
                return
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued message has been handed to the transport"""
        await self._queue.join()

    def stop(self, close_transport: bool = False) -> None:
        if not self.connected:
            return
        self.state = DISCONNECTED
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        if close_transport:
            self._closer = asyncio.ensure_future(self._close_transport())
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def _close_transport(self):
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Closing viewer {self.session_id} transport failed: {e!r}")


class BroadcastHub:
    """Keeps the registered viewers and pushes every roster change to all of them.

    The hub remembers the last roster and upstream status it broadcast, so a
    viewer that connects later starts from exactly the state the others see.
    """

    def __init__(self, queue_size: int = 64):
        if queue_size < MIN_VIEWER_QUEUE:
            raise ValueError(f"viewer queue size must be at least {MIN_VIEWER_QUEUE}, got {queue_size}")
        self.queue_size = queue_size
        self._sessions: Dict[str, ViewerSession] = {}
        self._clients_payload: list = []
        self._status = DISCONNECTED

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def sessions(self):
        return tuple(self._sessions.values())

    @property
    def status(self) -> str:
        return self._status

    @property
    def clients_payload(self) -> list:
        return self._clients_payload

    def get(self, session_id: str) -> Optional[ViewerSession]:
        return self._sessions.get(session_id)

    def connect(self, transport: SessionTransport,
                session_id: Optional[str] = None) -> ViewerSession:
        """Register a viewer and send it the current status and roster"""
        session = ViewerSession(transport, session_id, self.queue_size)
        previous = self._sessions.pop(session.session_id, None)
        if previous is not None:
            previous.stop()
        self._sessions[session.session_id] = session
        # Both fit: the queue holds at least MIN_VIEWER_QUEUE messages
        session.push("status", {"upstream": self._status})
        session.push("clients", self._clients_payload)
        session.start(self._on_push_failure)
        logger.info(f"📡 Viewer {session.session_id} connected (total: {len(self._sessions)})")
        return session

    def disconnect(self, session, close_transport: bool = False) -> None:
        """Deregister a viewer; no further pushes are attempted. Idempotent."""
        session_id = getattr(session, "session_id", session)
        found = self._sessions.get(session_id)
        if found is None or (isinstance(session, ViewerSession) and found is not session):
            return
        del self._sessions[session_id]
        found.stop(close_transport=close_transport)
        logger.info(f"📡 Viewer {session_id} disconnected (remaining: {len(self._sessions)})")

    def roster_changed(self, snapshot: Sequence[ClientRecord]) -> None:
        """Push a new snapshot to every registered viewer"""
        self._clients_payload = snapshot_payload(snapshot)
        self._broadcast("clients", self._clients_payload)

    def link_changed(self, state: str, message: Optional[str] = None) -> None:
        """Tell every viewer about an upstream link state change"""
        self._status = state
        self._broadcast("status", {"upstream": state})
        if message:
            self._broadcast("log", message)

    def _broadcast(self, event: str, data: Any) -> None:
        stalled = [s for s in self._sessions.values() if not s.push(event, data)]
        for session in stalled:
            logger.warning(f"Viewer {session.session_id} is not keeping up, dropping it")
            self.disconnect(session, close_transport=True)

    def _on_push_failure(self, session: ViewerSession) -> None:
        self.disconnect(session, close_transport=True)

    async def flush(self) -> None:
        await asyncio.gather(*(s.flush() for s in self.sessions))

    def close(self) -> None:
        for session in self.sessions:
            self.disconnect(session)
