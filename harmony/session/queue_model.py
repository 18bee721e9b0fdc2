"""Queue entries and the ordered, de-duplicated session queue."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional, Tuple


logger = logging.getLogger(__name__)


SOURCE_SPOTIFY = "spotify"
SOURCE_APPLE_MUSIC = "appleMusic"
SOURCES = frozenset({SOURCE_SPOTIFY, SOURCE_APPLE_MUSIC})


@dataclass(frozen=True)
class QueueEntry:
    id: str
    source: str
    uri: str
    name: str = ""
    artists: Tuple[str, ...] = ()
    album: str = ""
    duration_ms: int = 0
    # Insertion order, assigned by the queue that accepted the entry.
    seq: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.uri)

    @classmethod
    def new(cls, source: str, uri: str, **meta: Any) -> "QueueEntry":
        return cls(id=uuid.uuid4().hex, source=source, uri=uri, **meta)

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "QueueEntry":
        if not isinstance(obj, dict):
            raise ValueError("queue entry must be an object")
        source = obj.get("source")
        uri = obj.get("uri")
        if source not in SOURCES:
            raise ValueError(f"unknown source {source!r}")
        if not isinstance(uri, str) or not uri:
            raise ValueError("queue entry without uri")

        artists = obj.get("artists") or ()
        if isinstance(artists, str):
            artists = (artists,)
        names = tuple(
            str(a.get("name", "")) if isinstance(a, dict) else str(a)
            for a in artists
        )
        album = obj.get("album") or ""
        if isinstance(album, dict):
            album = album.get("name", "")
        try:
            duration = int(obj.get("duration_ms") or 0)
            seq = int(obj.get("seq") or 0)
        except (TypeError, ValueError) as e:
            raise ValueError(f"bad numeric field: {e}") from e

        return cls(
            id=str(obj.get("id") or uri),
            source=source,
            uri=uri,
            name=str(obj.get("name") or ""),
            artists=names,
            album=str(album),
            duration_ms=duration,
            seq=seq,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "uri": self.uri,
            "name": self.name,
            "artists": list(self.artists),
            "album": self.album,
            "duration_ms": self.duration_ms,
            "seq": self.seq,
        }


def parse_snapshot(items: Any) -> List[QueueEntry]:
    """Parse a ``queue-update`` list, dropping malformed entries."""

    if not isinstance(items, list):
        return []
    entries: List[QueueEntry] = []
    for item in items:
        try:
            entries.append(QueueEntry.from_json(item))
        except ValueError as e:
            logger.warning("queue snapshot entry dropped: %s", e)
    return entries


class SessionQueue:
    """FIFO sequence; removals never reorder the remaining entries."""

    def __init__(self) -> None:
        self._entries: List[QueueEntry] = []
        self._next_seq = 1

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(list(self._entries))

    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def find(self, ref: str) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.id == ref or entry.uri == ref:
                return entry
        return None

    def contains(self, source: str, uri: str) -> bool:
        return any(e.key == (source, uri) for e in self._entries)

    def add(self, entry: QueueEntry) -> Optional[QueueEntry]:
        """Append ``entry``; return the stored copy, or None for a duplicate."""

        if self.contains(entry.source, entry.uri):
            return None
        stored = replace(entry, seq=self._next_seq)
        self._next_seq += 1
        self._entries.append(stored)
        return stored

    def remove(self, ref: str) -> Optional[QueueEntry]:
        entry = self.find(ref)
        if entry is not None:
            self._entries.remove(entry)
        return entry

    def to_json(self) -> List[Dict[str, Any]]:
        return [e.to_json() for e in self._entries]
