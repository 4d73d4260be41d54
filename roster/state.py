"""
In-memory roster state: connected client records and the deltas applied to them
"""
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger("ts_roster")

QUERY_CLIENT_TYPE = "1"

# Wire name -> ClientRecord attribute
CORE_FIELDS = {
    "clid": "clid",
    "cid": "cid",
    "client_database_id": "database_id",
    "client_nickname": "nickname",
    "client_type": "client_type",
}


@dataclass(frozen=True)
class ClientRecord:
    """One client connected to the voice server"""
    clid: str
    cid: str = ""
    database_id: str = ""
    nickname: str = ""
    client_type: str = "0"
    extra: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @property
    def is_query(self) -> bool:
        return self.client_type == QUERY_CLIENT_TYPE

    @classmethod
    def from_fields(cls, fields: Mapping[str, str]) -> "ClientRecord":
        """Build a record from upstream key/value fields (wire names)"""
        core = {}
        extra = {}
        for key, value in fields.items():
            if key in CORE_FIELDS:
                core[CORE_FIELDS[key]] = str(value)
            else:
                extra[key] = str(value)
        if "clid" not in core:
            raise ValueError("client record without clid")
        return cls(extra=extra, **core)

    def with_fields(self, fields: Mapping[str, str]) -> "ClientRecord":
        """Return a copy with the given wire fields changed; clid never changes"""
        core = {}
        extra = dict(self.extra)
        for key, value in fields.items():
            if key == "clid":
                continue
            if key in CORE_FIELDS:
                core[CORE_FIELDS[key]] = str(value)
            else:
                extra[key] = str(value)
        return replace(self, extra=extra, **core)

    def to_payload(self) -> Dict[str, str]:
        payload = dict(self.extra)
        payload.update({
            "clid": self.clid,
            "cid": self.cid,
            "client_database_id": self.database_id,
            "client_nickname": self.nickname,
            "client_type": self.client_type,
        })
        return payload


# ============================================================
# DELTAS
# ============================================================

@dataclass(frozen=True)
class Add:
    record: ClientRecord


@dataclass(frozen=True)
class Update:
    clid: str
    fields: Mapping[str, str]


@dataclass(frozen=True)
class Remove:
    clid: str


@dataclass(frozen=True)
class ClearAll:
    pass


Delta = Union[Add, Update, Remove, ClearAll]


# ============================================================
# STORE
# ============================================================

class RosterStore:
    """Authoritative set of connected clients, keyed by clid.

    Deltas are applied synchronously, so on a single event loop no reader can
    observe a half-applied change. Readers get immutable tuples.
    """

    def __init__(self):
        self._records: Dict[str, ClientRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, clid: str) -> bool:
        return clid in self._records

    def get(self, clid: str) -> Optional[ClientRecord]:
        return self._records.get(clid)

    def current_records(self) -> Tuple[ClientRecord, ...]:
        """Point-in-time copy of all records, in insertion order"""
        return tuple(self._records.values())

    def apply_delta(self, change: Delta) -> bool:
        """Apply one delta. Returns True when the store content changed."""
        if isinstance(change, Add):
            record = change.record
            previous = self._records.get(record.clid)
            self._records[record.clid] = record
            return previous != record

        if isinstance(change, Update):
            current = self._records.get(change.clid)
            if current is None:
                logger.warning("Ignoring update for unknown client %s", change.clid)
                return False
            updated = current.with_fields(change.fields)
            self._records[change.clid] = updated
            return updated != current

        if isinstance(change, Remove):
            if self._records.pop(change.clid, None) is None:
                logger.debug("Ignoring remove for unknown client %s", change.clid)
                return False
            return True

        if isinstance(change, ClearAll):
            changed = bool(self._records)
            self._records.clear()
            return changed

        raise TypeError(f"Unknown delta: {change!r}")
