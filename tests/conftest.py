# tests/conftest.py
import threading

import pytest

from notes.model import NoteEvent, Song, Track
from timeline.clock import VirtualClock

# 120 bpm at 500 ticks per beat: one tick is exactly one millisecond
TPB = 500
BPM = 120.0


def note_track(index, notes, channel=0, program=None, tempos=()):
    """notes: (start_tick, end_tick, pitch) tuples."""
    events = [NoteEvent.tempo(t, b) for t, b in tempos]
    for start, end, pitch in notes:
        events.append(NoteEvent.note_on(start, channel, pitch, 100))
        events.append(NoteEvent.note_off(end, channel, pitch))
    events.sort(key=lambda e: e.tick)
    return Track(index=index, events=events, program=program)


def make_song(title="song", *tracks, bpm=BPM, tpb=TPB, index=0):
    return Song(title=title, tracks=tuple(tracks), default_bpm=bpm, ticks_per_beat=tpb, index=index)


def simple_song(title="song", length_ms=1000, index=0, channel=0):
    """One held note over the whole song."""
    return make_song(title, note_track(0, [(0, length_ms, 60)], channel=channel), index=index)


def busy_song(title="busy", length_ms=10_000, step=100, index=0):
    """Back-to-back short notes, so any window holds notes."""
    notes = [(t, t + step, 60 + (t // step) % 12) for t in range(0, length_ms, step)]
    return make_song(title, note_track(0, notes), index=index)


class RecordingSink:
    """Note sink that remembers every call with the clock time it arrived."""
    def __init__(self, clock=None):
        self.clock = clock
        self.calls = []
        self._lock = threading.Lock()

    def _rec(self, op, *args):
        t = self.clock.now() if self.clock is not None else 0.0
        with self._lock:
            self.calls.append((t, op) + args)

    def note_on(self, channel, pitch, velocity):
        self._rec("note_on", channel, pitch, velocity)

    def note_off(self, channel, pitch):
        self._rec("note_off", channel, pitch)

    def all_notes_off(self, channel=None):
        self._rec("all_notes_off", channel)

    def program_change(self, channel, program):
        self._rec("program_change", channel, program)

    def close(self):
        self._rec("close")

    def ops(self, name):
        return [c for c in self.calls if c[1] == name]


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def sink(clock):
    return RecordingSink(clock)


@pytest.fixture
def two_track_song():
    return make_song(
        "duet",
        note_track(0, [(0, 500, 60)], channel=0),
        note_track(1, [(250, 750, 64)], channel=1),
    )
