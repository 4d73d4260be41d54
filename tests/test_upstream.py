"""
UpstreamAdapter state machine and the wired RosterService
"""
from roster.config import Settings
from roster.service import RosterService
from roster.state import RosterStore
from roster.upstream import (
    ClientJoined,
    ClientLeft,
    ClientUpdated,
    LinkDown,
    LinkState,
    LinkUp,
    UpstreamAdapter,
)
from tests.conftest import FakeTransport, record


class Recorder:
    def __init__(self):
        self.changes = 0
        self.links = []

    def on_change(self):
        self.changes += 1

    def on_link_change(self, state, message):
        self.links.append(state)


def make_adapter():
    rec = Recorder()
    store = RosterStore()
    return UpstreamAdapter(store, rec.on_change, rec.on_link_change), store, rec


class TestUpstreamAdapter:

    def test_starts_disconnected(self):
        adapter, _, _ = make_adapter()
        assert adapter.state == LinkState.DISCONNECTED
        assert not adapter.fresh

    def test_events_translate_to_deltas_in_order(self):
        adapter, store, rec = make_adapter()
        adapter.handle(LinkUp())
        adapter.handle(ClientJoined(record(1, "Anna")))
        adapter.handle(ClientUpdated("1", {"client_nickname": "Anne"}))
        adapter.handle(ClientLeft("1"))
        adapter.handle(ClientJoined(record(1, "Anna")))

        assert [r.nickname for r in store.current_records()] == ["Anna"]
        assert rec.changes == 4
        assert rec.links == [LinkState.CONNECTED]

    def test_presence_dropped_while_disconnected(self, caplog):
        adapter, store, rec = make_adapter()
        adapter.handle(ClientJoined(record(1, "Anna")))
        assert len(store) == 0
        assert rec.changes == 0
        assert "Dropping ClientJoined" in caplog.text

    def test_link_down_clears_store(self):
        adapter, store, rec = make_adapter()
        adapter.handle(LinkUp())
        adapter.handle(ClientJoined(record(1, "Anna")))
        adapter.handle(LinkDown())

        assert len(store) == 0
        assert adapter.state == LinkState.DISCONNECTED
        assert rec.links == [LinkState.CONNECTED, LinkState.DISCONNECTED]

    def test_link_down_with_error_is_errored(self):
        adapter, _, rec = make_adapter()
        adapter.handle(LinkUp())
        adapter.handle(LinkDown(error="connection reset"))
        assert adapter.state == LinkState.ERRORED
        # Repeated failures while already errored are not re-announced
        adapter.handle(LinkDown(error="refused"))
        assert rec.links == [LinkState.CONNECTED, LinkState.ERRORED]

    def test_update_for_unknown_client_changes_nothing(self):
        adapter, store, rec = make_adapter()
        adapter.handle(LinkUp())
        adapter.handle(ClientJoined(record(1, "Anna")))
        before = store.current_records()

        adapter.handle(ClientUpdated("404", {"client_nickname": "Ghost"}))

        assert store.current_records() == before
        assert rec.changes == 1

    async def test_run_applies_submitted_events(self):
        adapter, store, _ = make_adapter()
        adapter.start()
        adapter.submit(LinkUp())
        adapter.submit(ClientJoined(record(1, "Anna")))
        adapter.submit(ClientJoined(record(2, "Bernd")))
        adapter.submit(ClientLeft("1"))
        await adapter.join()
        await adapter.stop()

        assert [r.clid for r in store.current_records()] == ["2"]


async def connected_service(*records):
    service = RosterService(Settings())
    await service.start(with_link=False)
    service.adapter.submit(LinkUp())
    for r in records:
        service.adapter.submit(ClientJoined(r))
    await service.adapter.join()
    return service


class TestRosterService:

    async def test_viewer_gets_filtered_sorted_snapshot_on_connect(self):
        service = await connected_service(
            record(1, "Özgür"),
            record(2, "ServerAdmin"),
            record(3, "Anna"),
            record(4, "Bérénice"),
        )
        viewer = FakeTransport()
        service.hub.connect(viewer)
        await service.hub.flush()

        assert viewer.events("status") == [{"upstream": "connected"}]
        assert viewer.nicknames() == ["Anna", "Bérénice", "Özgür"]
        await service.stop()

    async def test_link_down_pushes_empty_roster_to_all(self):
        service = await connected_service(record(1, "Anna"), record(2, "Bernd"), record(3, "Carla"))
        viewers = [FakeTransport(), FakeTransport()]
        for v in viewers:
            service.hub.connect(v)
        await service.hub.flush()

        service.adapter.submit(LinkDown())
        await service.adapter.join()
        await service.hub.flush()

        for v in viewers:
            assert v.events("clients")[-1] == []
            assert v.events("status")[-1] == {"upstream": "disconnected"}
        await service.stop()

    async def test_unknown_update_notifies_nobody(self):
        service = await connected_service(record(1, "Anna"))
        viewer = FakeTransport()
        service.hub.connect(viewer)
        await service.hub.flush()
        sent_before = list(viewer.sent)

        service.adapter.submit(ClientUpdated("99", {"client_nickname": "Ghost"}))
        await service.adapter.join()
        await service.hub.flush()

        assert viewer.sent == sent_before
        await service.stop()

    async def test_invisible_changes_are_not_broadcast(self):
        service = await connected_service(record(1, "Anna"))
        viewer = FakeTransport()
        service.hub.connect(viewer)
        await service.hub.flush()

        service.adapter.submit(ClientJoined(record(2, "query", client_type="1")))
        await service.adapter.join()
        await service.hub.flush()

        assert len(viewer.events("clients")) == 1
        await service.stop()

    async def test_independent_instances(self):
        one = await connected_service(record(1, "Anna"))
        two = await connected_service()
        assert [r.nickname for r in one.snapshot()] == ["Anna"]
        assert two.snapshot() == ()
        await one.stop()
        await two.stop()

    async def test_start_without_password_skips_link(self):
        service = RosterService(Settings(query_password=None))
        await service.start()
        assert service.link is None
        assert service.link_state == LinkState.DISCONNECTED
        await service.stop()
