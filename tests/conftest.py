"""
Shared fakes for roster tests
"""
import asyncio

from roster.state import ClientRecord


class FakeTransport:
    """Records every push; optionally fails or blocks"""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.closed = False

    async def send(self, event, data):
        if self.fail:
            raise ConnectionResetError("viewer went away")
        self.sent.append((event, data))

    async def close(self):
        self.closed = True

    def events(self, name):
        return [data for event, data in self.sent if event == name]

    def nicknames(self):
        """Nicknames of the most recent `clients` push"""
        return [c["client_nickname"] for c in self.events("clients")[-1]]


class BlockedTransport(FakeTransport):
    """Never completes a send, so its queue fills up"""

    async def send(self, event, data):
        await asyncio.Event().wait()


def record(clid, nickname, client_type="0", cid="1", database_id=None):
    return ClientRecord(
        clid=str(clid),
        cid=cid,
        database_id=database_id or str(100 + int(clid)),
        nickname=nickname,
        client_type=client_type,
    )
