"""
Upstream presence feed: event types and the adapter that turns them into roster deltas
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from .state import Add, ClearAll, ClientRecord, Remove, RosterStore, Update

logger = logging.getLogger("ts_roster")


class LinkState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


# ============================================================
# EVENTS
# ============================================================

@dataclass(frozen=True)
class ClientJoined:
    record: ClientRecord


@dataclass(frozen=True)
class ClientUpdated:
    clid: str
    fields: Mapping[str, str]


@dataclass(frozen=True)
class ClientLeft:
    clid: str


@dataclass(frozen=True)
class LinkUp:
    pass


@dataclass(frozen=True)
class LinkDown:
    error: Optional[str] = None


# ============================================================
# ADAPTER
# ============================================================

class UpstreamAdapter:
    """Applies upstream events to the store, one at a time and in arrival order.

    Events are queued by `submit` and consumed by a single task, so store
    updates never interleave. Leaving the Connected state clears the store:
    viewers get an empty roster plus a degraded status instead of stale data.
    """

    def __init__(self, store: RosterStore,
                 on_change: Callable[[], None],
                 on_link_change: Callable[[LinkState, Optional[str]], None]):
        self.store = store
        self.state = LinkState.DISCONNECTED
        self._on_change = on_change
        self._on_link_change = on_link_change
        self._events: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def fresh(self) -> bool:
        return self.state == LinkState.CONNECTED

    def submit(self, event) -> None:
        """Feed an upstream event; it is applied after all earlier ones"""
        self._events.put_nowait(event)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def join(self) -> None:
        """Wait until every submitted event has been applied"""
        await self._events.join()

    async def run(self):
        while True:
            event = await self._events.get()
            try:
                self.handle(event)
            except Exception:
                logger.exception(f"Failed to apply upstream event {event!r}")
            finally:
                self._events.task_done()

    def handle(self, event) -> None:
        if isinstance(event, LinkUp):
            self._link_up()
        elif isinstance(event, LinkDown):
            self._link_down(event.error)
        elif not self.fresh:
            logger.warning(f"Dropping {type(event).__name__} received while link is {self.state.value}")
        elif isinstance(event, ClientJoined):
            self._apply(Add(event.record))
        elif isinstance(event, ClientUpdated):
            self._apply(Update(event.clid, event.fields))
        elif isinstance(event, ClientLeft):
            self._apply(Remove(event.clid))
        else:
            logger.warning(f"Ignoring unknown upstream event {event!r}")

    def _apply(self, delta) -> None:
        if self.store.apply_delta(delta):
            self._on_change()

    def _link_up(self) -> None:
        if self.state == LinkState.CONNECTED:
            return
        self.state = LinkState.CONNECTED
        logger.info("🔗 Upstream link connected")
        self._on_link_change(self.state, "Voice server connected")

    def _link_down(self, error: Optional[str]) -> None:
        new_state = LinkState.ERRORED if error else LinkState.DISCONNECTED
        was_connected = self.state == LinkState.CONNECTED
        if not was_connected and new_state == self.state:
            return
        self.state = new_state
        if was_connected:
            self._apply(ClearAll())
        if error:
            logger.warning(f"⚠️ Upstream link lost: {error}")
            self._on_link_change(self.state, f"Voice server connection error: {error}")
        else:
            logger.info("🔌 Upstream link disconnected")
            self._on_link_change(self.state, "Voice server disconnected")
