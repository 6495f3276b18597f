# timeline/builder.py
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from errors import EmptyTimeline, InvalidTrackSelection
from notes.model import EventKind, Song
from notes.tempo import TempoMap

logger = logging.getLogger(__name__)

TrackFilter = Union[None, str, Iterable[int]]


@dataclass(frozen=True)
class TimedEvent:
    offset_ms: float
    kind: EventKind
    channel: int = 0
    pitch: int = 0
    velocity: int = 0
    bpm: Optional[float] = None   # effective tempo for TEMPO events
    track: int = 0
    seq: int = 0                  # position inside the source track

    @property
    def is_note(self) -> bool:
        return self.kind in (EventKind.NOTE_ON, EventKind.NOTE_OFF)


@dataclass(frozen=True)
class Timeline:
    song_index: int
    title: str
    events: Tuple[TimedEvent, ...]
    reference_bpm: float
    tracks: FrozenSet[int]
    start_ms: float = 0.0         # song position of offset 0
    ignored_tracks: Tuple[int, ...] = ()
    programs: Dict[int, Tuple[int, int]] = field(default_factory=dict)  # track -> (channel, program)

    def __len__(self) -> int:
        return len(self.events)

    @property
    def total_ms(self) -> float:
        return self.events[-1].offset_ms if self.events else 0.0

    @property
    def note_count(self) -> int:
        return sum(1 for e in self.events if e.kind == EventKind.NOTE_ON)

    @property
    def channels(self) -> FrozenSet[int]:
        return frozenset(e.channel for e in self.events if e.is_note)

    def window(self, start_ms: float, length_ms: Optional[float] = None) -> "Timeline":
        """Events in [start, start+length) rebased to 0.

        NoteOffs whose NoteOn lies before the window are dropped; notes still
        sounding when the window closes get a NoteOff at the window end.
        """
        start_ms = max(0.0, float(start_ms))
        tail = None if length_ms is None else max(0.0, float(length_ms))
        end_ms = None if tail is None else start_ms + tail
        if start_ms == 0.0 and (end_ms is None or end_ms >= self.total_ms):
            return self

        bpm = self.reference_bpm
        out: List[TimedEvent] = []
        open_notes: Dict[Tuple[int, int], List[TimedEvent]] = {}
        for ev in self.events:
            if ev.offset_ms < start_ms:
                if ev.kind == EventKind.TEMPO:
                    bpm = ev.bpm
                continue
            if end_ms is not None and ev.offset_ms >= end_ms:
                break
            key = (ev.channel, ev.pitch)
            if ev.kind == EventKind.NOTE_ON:
                open_notes.setdefault(key, []).append(ev)
            elif ev.kind == EventKind.NOTE_OFF:
                if not open_notes.get(key):
                    continue
                open_notes[key].pop()
            rel = ev.offset_ms - start_ms
            out.append(replace(ev, offset_ms=rel if tail is None else min(rel, tail)))

        if tail is not None:
            pending = sorted((on for ons in open_notes.values() for on in ons),
                             key=lambda e: (e.track, e.seq))
            for on in pending:
                out.append(replace(on, offset_ms=tail, kind=EventKind.NOTE_OFF, velocity=0))

        head = TimedEvent(0.0, EventKind.TEMPO, bpm=bpm, track=-1, seq=-1)
        if not out or out[0].kind != EventKind.TEMPO or out[0].offset_ms > 0:
            out.insert(0, head)
        if not any(e.is_note for e in out):
            raise EmptyTimeline(self.title, self.tracks)
        return replace(self, events=tuple(out), start_ms=self.start_ms + start_ms,
                       reference_bpm=bpm)


def _select_tracks(song: Song, track_filter: TrackFilter) -> Tuple[FrozenSet[int], Tuple[int, ...]]:
    every = frozenset(range(len(song.tracks)))
    if track_filter is None or (isinstance(track_filter, str) and track_filter.lower() == "all"):
        return every, ()
    wanted = {int(i) for i in track_filter}
    if not wanted:
        return every, ()
    ignored = tuple(sorted(wanted - every))
    if ignored:
        logger.warning("%s", InvalidTrackSelection(ignored, len(song.tracks)))
    return frozenset(wanted & every), ignored


def build_timeline(song: Song, track_filter: TrackFilter = None, tempo_override: Optional[float] = None,
                   start_ms: float = 0.0, length_ms: Optional[float] = None) -> Timeline:
    """Merge the selected tracks of `song` into one time-ordered event sequence.

    Tempo changes are collected from every track since they are global. Ties
    on the absolute offset keep track order, then order inside the track.
    Raises EmptyTimeline when the selection holds no note events.
    """
    if tempo_override is not None and tempo_override <= 0:
        raise ValueError(f"tempo override must be positive, got {tempo_override}")
    selected, ignored = _select_tracks(song, track_filter)
    tmap = TempoMap.from_song(song, tempo_override)

    merged: List[TimedEvent] = []
    for tr in song.tracks:
        chosen = tr.index in selected
        for seq, ev in enumerate(tr.events):
            if ev.kind == EventKind.TEMPO:
                merged.append(TimedEvent(tmap.tick_to_ms(ev.tick), ev.kind,
                                         bpm=tmap.bpm_at(ev.tick), track=tr.index, seq=seq))
            elif chosen:
                merged.append(TimedEvent(tmap.tick_to_ms(ev.tick), ev.kind, ev.channel, ev.pitch,
                                         ev.velocity, track=tr.index, seq=seq))
    merged.sort(key=lambda e: (e.offset_ms, e.track, e.seq))

    if not any(e.is_note for e in merged):
        raise EmptyTimeline(song.title, None if track_filter is None else selected)

    programs = {}
    for tr in song.tracks:
        if tr.index in selected and tr.program is not None:
            chans = tr.channels
            programs[tr.index] = (chans[0] if chans else 0, tr.program)

    tl = Timeline(song_index=song.index, title=song.title, events=tuple(merged),
                  reference_bpm=tmap.initial_bpm, tracks=selected, ignored_tracks=ignored,
                  programs=programs)
    if start_ms or length_ms is not None:
        tl = tl.window(start_ms, length_ms)
    logger.debug("Built timeline for '%s': %d events, %.0f ms", song.title, len(tl), tl.total_ms)
    return tl
