"""
TeamSpeak ServerQuery link: the upstream presence feed

Keeps a raw ServerQuery connection open, turns client notifications and
periodic `clientlist` resyncs into upstream events, and reconnects with
exponential backoff when the connection drops.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .config import Settings
from .state import ClientRecord
from .upstream import ClientJoined, ClientLeft, ClientUpdated, LinkDown, LinkUp
from .utils import escape_query_value, unescape_query_value

logger = logging.getLogger("ts_roster")

COMMAND_TIMEOUT = 10.0
CONNECT_TIMEOUT = 10.0

# Fields tracked per client, named as in `clientlist` replies
LIST_FIELDS = ("clid", "cid", "client_database_id", "client_nickname", "client_type")


class QueryError(Exception):
    """A ServerQuery command answered with a non-zero error id"""

    def __init__(self, error_id: int, message: str):
        super().__init__(f"error id={error_id}: {message}")
        self.error_id = error_id
        self.message = message


# ============================================================
# WIRE FORMAT
# ============================================================

def build_command(name: str, *options: str, **params) -> str:
    parts = [name]
    for key, value in params.items():
        if value is None:
            continue
        parts.append(f"{key}={escape_query_value(str(value))}")
    parts.extend(f"-{opt.lstrip('-')}" for opt in options)
    return " ".join(parts)


def parse_records(line: str) -> List[Dict[str, str]]:
    """Parse a reply line: records split by `|`, fields by spaces"""
    records = []
    for chunk in line.split("|"):
        record = {}
        for token in chunk.split(" "):
            if not token:
                continue
            key, sep, value = token.partition("=")
            record[key] = unescape_query_value(value) if sep else ""
        if record:
            records.append(record)
    return records


def parse_notification(line: str):
    """Split `notifyname k=v ...` into (name, records)"""
    name, _, rest = line.partition(" ")
    return name, parse_records(rest)


def parse_error(line: str):
    fields = parse_records(line[len("error "):])[0]
    return int(fields.get("id", "0")), fields.get("msg", "")


def tracked_fields(fields: Dict[str, str]) -> Dict[str, str]:
    return {key: fields[key] for key in LIST_FIELDS if key in fields}


# ============================================================
# CONNECTION
# ============================================================

class ServerQueryConnection:
    """One raw ServerQuery TCP session; one command in flight at a time"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 on_notify: Callable[[str, List[Dict[str, str]]], None]):
        self._reader = reader
        self._writer = writer
        self._on_notify = on_notify
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Future] = None
        self._lines: List[str] = []
        self._reader_task: Optional[asyncio.Task] = None

    @classmethod
    async def open(cls, host: str, port: int, on_notify) -> "ServerQueryConnection":
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), CONNECT_TIMEOUT)
        conn = cls(reader, writer, on_notify)
        try:
            banner = await asyncio.wait_for(conn._readline(), CONNECT_TIMEOUT)
            if banner != "TS3":
                logger.warning(f"Unexpected ServerQuery banner: {banner!r}")
            await asyncio.wait_for(conn._readline(), CONNECT_TIMEOUT)  # welcome text
        except BaseException:
            conn.close()
            raise
        conn._reader_task = asyncio.ensure_future(conn._read_loop())
        return conn

    @property
    def closed(self):
        """Task that finishes when the connection is gone"""
        return self._reader_task

    async def _readline(self) -> str:
        raw = await self._reader.readline()
        if not raw:
            raise ConnectionError("ServerQuery connection closed")
        return raw.decode("utf-8", errors="replace").strip("\r\n")

    async def _read_loop(self):
        try:
            while True:
                line = await self._readline()
                if not line:
                    continue
                if line.startswith("notify"):
                    name, records = parse_notification(line)
                    try:
                        self._on_notify(name, records)
                    except Exception:
                        logger.exception(f"Failed to handle {name}")
                elif line.startswith("error "):
                    self._finish(line)
                elif self._pending is not None:
                    self._lines.append(line)
                else:
                    logger.warning(f"Unexpected ServerQuery line: {line[:80]!r}")
        except BaseException as e:
            if self._pending is not None and not self._pending.done():
                self._pending.set_exception(
                    e if isinstance(e, Exception) else ConnectionError("connection closed"))
            raise

    def _finish(self, line: str):
        if self._pending is None or self._pending.done():
            logger.warning(f"Unsolicited ServerQuery status: {line!r}")
            return
        error_id, message = parse_error(line)
        if error_id != 0:
            self._pending.set_exception(QueryError(error_id, message))
        else:
            records = []
            for data_line in self._lines:
                records.extend(parse_records(data_line))
            self._pending.set_result(records)

    async def execute(self, name: str, *options: str, **params) -> List[Dict[str, str]]:
        """Send one command and return the records of its reply"""
        command = build_command(name, *options, **params)
        async with self._lock:
            loop = asyncio.get_running_loop()
            self._pending = loop.create_future()
            self._lines = []
            try:
                self._writer.write((command + "\n").encode("utf-8"))
                await self._writer.drain()
                return await asyncio.wait_for(self._pending, COMMAND_TIMEOUT)
            finally:
                self._pending = None
                self._lines = []

    def close(self):
        task = self._reader_task
        if task is not None:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()
        self._writer.close()


# ============================================================
# LINK
# ============================================================

class ServerQueryLink:
    """Feeds upstream events for one virtual server, reconnecting as needed"""

    def __init__(self, settings: Settings, emit: Callable[[object], None]):
        self.settings = settings
        self._emit = emit
        self._known: Dict[str, Dict[str, str]] = {}
        self._task: Optional[asyncio.Task] = None

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

    async def run(self):
        s = self.settings
        delay = s.reconnect_base
        while True:
            conn = None
            linked = False
            try:
                conn = await ServerQueryConnection.open(s.query_host, s.query_port, self._on_notify)
                await self._setup(conn)
                linked = True
                delay = s.reconnect_base
                logger.info(f"🔗 ServerQuery connected to {s.query_host}:{s.query_port} (sid={s.server_id})")
                self._emit(LinkUp())
                await self._resync(conn)
                await self._serve(conn)
                self._emit(LinkDown())
            except asyncio.CancelledError:
                if linked:
                    self._emit(LinkDown())
                raise
            except (OSError, ConnectionError, QueryError, asyncio.TimeoutError,
                    asyncio.IncompleteReadError) as e:
                logger.warning(f"ServerQuery link failed: {e!r}")
                self._emit(LinkDown(error=str(e) or type(e).__name__))
            except Exception as e:
                logger.exception("Unexpected ServerQuery link failure")
                self._emit(LinkDown(error=repr(e)))
            finally:
                self._known.clear()
                if conn is not None:
                    conn.close()
            logger.info(f"Reconnecting to ServerQuery in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, s.reconnect_max)

    async def _setup(self, conn: ServerQueryConnection):
        s = self.settings
        await conn.execute("login", client_login_name=s.query_user,
                           client_login_password=s.query_password)
        await conn.execute("use", sid=s.server_id)
        if s.query_nickname:
            await conn.execute("clientupdate", client_nickname=s.query_nickname)
        await conn.execute("servernotifyregister", event="server")
        await conn.execute("servernotifyregister", event="channel", id=0)

    async def _serve(self, conn: ServerQueryConnection):
        """Resync periodically until the connection closes"""
        while True:
            done, _ = await asyncio.wait({conn.closed}, timeout=self.settings.resync_interval)
            if done:
                error = conn.closed.exception() if not conn.closed.cancelled() else None
                if error is not None:
                    raise error
                return
            await self._resync(conn)

    async def _resync(self, conn: ServerQueryConnection):
        """Reconcile with a full `clientlist`; nickname changes are only seen here"""
        listed = {}
        for entry in await conn.execute("clientlist"):
            fields = tracked_fields(entry)
            if "clid" in fields:
                listed[fields["clid"]] = fields

        for clid in [c for c in self._known if c not in listed]:
            self._client_left(clid)
        for clid, fields in listed.items():
            known = self._known.get(clid)
            if known is None:
                self._client_joined(fields)
                continue
            changed = {k: v for k, v in fields.items() if known.get(k) != v}
            if changed:
                known.update(changed)
                self._emit(ClientUpdated(clid, changed))

    def _client_joined(self, fields: Dict[str, str]):
        self._known[fields["clid"]] = dict(fields)
        self._emit(ClientJoined(ClientRecord.from_fields(fields)))

    def _client_left(self, clid: str):
        self._known.pop(clid, None)
        self._emit(ClientLeft(clid))

    def _on_notify(self, name: str, records: List[Dict[str, str]]):
        for entry in records:
            clid = entry.get("clid")
            if not clid:
                logger.warning(f"{name} without clid, ignoring")
                continue
            if name == "notifycliententerview":
                fields = dict(entry)
                if "ctid" in fields:
                    fields["cid"] = fields["ctid"]
                self._client_joined(tracked_fields(fields))
            elif name == "notifyclientleftview":
                self._client_left(clid)
            elif name == "notifyclientmoved" and "ctid" in entry:
                if clid in self._known:
                    self._known[clid]["cid"] = entry["ctid"]
                self._emit(ClientUpdated(clid, {"cid": entry["ctid"]}))
