"""
Roster view policy: which clients viewers see, and in which order
"""
from typing import Callable, Iterable, Sequence, Tuple

from pyuca import Collator

from .state import ClientRecord

CollationKey = Callable[[str], object]

_collator = None


def german_collation_key(name: str) -> tuple:
    """Sort key for German (de) ordering.

    German uses the Unicode root collation untailored: letters compare by
    base letter first, so "Özgür" sorts with "O", "Łukasz" with "L" and
    "ß" as "ss". Accents break ties next, then case (lowercase first).
    """
    global _collator
    if _collator is None:
        _collator = Collator()
    return _collator.sort_key(name)


def codepoint_collation_key(name: str) -> str:
    """Plain code point order, for deterministic tests"""
    return name


class Normalizer:
    """Turns store contents into the snapshot viewers receive"""

    def __init__(self, collation_key: CollationKey = german_collation_key,
                 reserved_names: Iterable[str] = ("serveradmin",)):
        self.collation_key = collation_key
        self.reserved_names = frozenset(n.casefold() for n in reserved_names)

    def is_visible(self, record: ClientRecord) -> bool:
        if record.is_query:
            return False
        return record.nickname.casefold() not in self.reserved_names

    def normalize(self, records: Sequence[ClientRecord]) -> Tuple[ClientRecord, ...]:
        # Full recompute on every call; sorted() is stable so ties keep input order
        visible = [r for r in records if self.is_visible(r)]
        return tuple(sorted(visible, key=lambda r: self.collation_key(r.nickname)))

    __call__ = normalize


def snapshot_payload(snapshot: Iterable[ClientRecord]) -> list:
    """Serialize a snapshot into the `clients` event payload"""
    return [record.to_payload() for record in snapshot]
