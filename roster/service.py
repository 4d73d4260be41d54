"""
RosterService: one roster pipeline, from the upstream feed to the viewers
"""
import logging
from typing import Optional

from .config import Settings
from .hub import BroadcastHub
from .normalize import CollationKey, Normalizer, german_collation_key
from .serverquery import ServerQueryLink
from .state import RosterStore
from .upstream import LinkState, UpstreamAdapter

logger = logging.getLogger("ts_roster")


class RosterService:
    """Wires store, normalizer, hub and upstream adapter together.

    Each instance is independent; the aiohttp app keeps its own under
    app["roster"].
    """

    def __init__(self, settings: Optional[Settings] = None,
                 collation_key: CollationKey = german_collation_key):
        self.settings = settings or Settings()
        self.store = RosterStore()
        self.normalizer = Normalizer(collation_key, self.settings.reserved_names)
        self.hub = BroadcastHub(queue_size=self.settings.viewer_queue_size)
        self.adapter = UpstreamAdapter(self.store, self._roster_changed, self._link_changed)
        self.link: Optional[ServerQueryLink] = None
        self._last_snapshot = ()

    def snapshot(self):
        return self.normalizer(self.store.current_records())

    @property
    def link_state(self) -> LinkState:
        return self.adapter.state

    def _roster_changed(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        self.hub.roster_changed(snapshot)

    def _link_changed(self, state: LinkState, message: Optional[str]) -> None:
        self.hub.link_changed(state.value, message)

    async def start(self, with_link: bool = True) -> None:
        self.adapter.start()
        if not with_link:
            return
        if not self.settings.upstream_configured:
            logger.warning("TS_QUERY_PASSWORD not set, running without an upstream link")
            return
        self.link = ServerQueryLink(self.settings, self.adapter.submit)
        self.link.start()

    async def stop(self) -> None:
        if self.link is not None:
            await self.link.stop()
            self.link = None
        await self.adapter.stop()
        self.hub.close()
