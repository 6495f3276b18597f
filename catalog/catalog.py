# catalog/catalog.py
import logging
import threading
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Tuple

from errors import SongNotFound
from notes.model import Song, SongSource, SongSummary

logger = logging.getLogger(__name__)


class SongCatalog:
    """Static songs at [0, N), dynamic songs at [N, N+M) in append order.

    Readers never lock: every write swaps in a new tuple, so a reader always
    sees a consistent snapshot. Writers are serialized by `_write_lock`.
    """
    def __init__(self, static_songs: Iterable[Song] = ()):
        self._static: Tuple[Song, ...] = tuple(
            replace(s, index=i, source=SongSource.STATIC) for i, s in enumerate(static_songs))
        self._dynamic: Tuple[Song, ...] = ()
        self._write_lock = threading.Lock()
        self._listeners: List[Callable[[int], None]] = []

    # ---------- reads ----------
    def _snapshot(self) -> Tuple[Song, ...]:
        return self._static + self._dynamic

    def __len__(self) -> int:
        return len(self._static) + len(self._dynamic)

    @property
    def static_count(self) -> int:
        return len(self._static)

    @property
    def dynamic_count(self) -> int:
        return len(self._dynamic)

    def list(self) -> List[SongSummary]:
        return [s.summary() for s in self._snapshot()]

    def get(self, index: int) -> Song:
        songs = self._snapshot()
        if not 0 <= index < len(songs):
            raise SongNotFound(index)
        return songs[index]

    def find(self, title: str) -> Optional[Song]:
        t = title.lower()
        return next((s for s in self._snapshot() if s.title.lower() == t), None)

    # ---------- writes ----------
    def on_change(self, fn: Callable[[int], None]):
        """Register fn(song_count), called after every dynamic mutation."""
        self._listeners.append(fn)

    def _notify(self, count: int):
        for fn in list(self._listeners):
            try:
                fn(count)
            except Exception:
                logger.exception("Catalog listener failed")

    def append_dynamic(self, song: Song) -> int:
        with self._write_lock:
            idx = len(self._static) + len(self._dynamic)
            self._dynamic = self._dynamic + (replace(song, index=idx, source=SongSource.DYNAMIC),)
            count = idx + 1
        logger.info("Added song '%s' at index %d", song.title, idx)
        self._notify(count)
        return idx

    def clear_dynamic(self) -> int:
        with self._write_lock:
            removed = len(self._dynamic)
            self._dynamic = ()
            count = len(self._static)
        logger.info("Cleared %d dynamic songs", removed)
        self._notify(count)
        return removed
