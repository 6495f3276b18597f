# notes/model.py
from dataclasses import dataclass
from functools import cached_property
from enum import Enum
from typing import Optional, Tuple


class EventKind(str, Enum):
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"
    TEMPO = "tempo"
    END_OF_TRACK = "end_of_track"


class SongSource(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class NoteEvent:
    tick: int       # offset from song start
    kind: EventKind
    channel: int = 0
    pitch: int = 0
    velocity: int = 0
    bpm: Optional[float] = None   # TempoChange only

    @property
    def is_note(self) -> bool:
        return self.kind in (EventKind.NOTE_ON, EventKind.NOTE_OFF)

    @staticmethod
    def note_on(tick: int, channel: int, pitch: int, velocity: int = 100) -> "NoteEvent":
        return NoteEvent(tick, EventKind.NOTE_ON, channel, pitch, velocity)

    @staticmethod
    def note_off(tick: int, channel: int, pitch: int) -> "NoteEvent":
        return NoteEvent(tick, EventKind.NOTE_OFF, channel, pitch, 0)

    @staticmethod
    def tempo(tick: int, bpm: float) -> "NoteEvent":
        return NoteEvent(tick, EventKind.TEMPO, bpm=float(bpm))

    @staticmethod
    def end_of_track(tick: int) -> "NoteEvent":
        return NoteEvent(tick, EventKind.END_OF_TRACK)


@dataclass(frozen=True)
class Track:
    index: int
    events: Tuple[NoteEvent, ...] = ()
    name: str = ""
    program: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "events", tuple(self.events))
        last = 0
        for ev in self.events:
            if ev.tick < last:
                raise ValueError(f"Track {self.index}: tick {ev.tick} after {last}")
            last = ev.tick

    @property
    def channels(self) -> Tuple[int, ...]:
        return tuple(sorted({e.channel for e in self.events if e.is_note}))

    @property
    def note_count(self) -> int:
        return sum(1 for e in self.events if e.kind == EventKind.NOTE_ON)

    @property
    def pitch_range(self) -> Optional[Tuple[int, int]]:
        ps = [e.pitch for e in self.events if e.kind == EventKind.NOTE_ON]
        return (min(ps), max(ps)) if ps else None


@dataclass(frozen=True)
class SongSummary:
    index: int
    title: str
    source: SongSource
    track_count: int
    duration_ms: float


@dataclass(frozen=True)
class Song:
    """Immutable parsed song. `index` is assigned by the catalog."""
    title: str
    tracks: Tuple[Track, ...] = ()
    default_bpm: float = 120.0
    ticks_per_beat: int = 480
    index: int = -1
    source: SongSource = SongSource.STATIC
    filename: str = ""

    def __post_init__(self):
        object.__setattr__(self, "tracks", tuple(self.tracks))
        if self.default_bpm <= 0:
            raise ValueError("default_bpm must be positive")
        if self.ticks_per_beat <= 0:
            raise ValueError("ticks_per_beat must be positive")

    def tempo_map(self):
        from notes.tempo import TempoMap
        return TempoMap.from_song(self)

    @cached_property
    def duration_ms(self) -> float:
        """Offset of the last event of any track under the embedded tempo map."""
        last = max((t.events[-1].tick for t in self.tracks if t.events), default=0)
        return self.tempo_map().tick_to_ms(last)

    def summary(self) -> SongSummary:
        return SongSummary(self.index, self.title, self.source, len(self.tracks), self.duration_ms)
