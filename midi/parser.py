# midi/parser.py
import logging
import os
from typing import Dict, List, Optional, Tuple

import mido

from notes.model import NoteEvent, Song, SongSource, Track

logger = logging.getLogger(__name__)

MIDI_EXTENSIONS = (".mid", ".midi")


def _convert_track(index: int, mtrack: mido.MidiTrack) -> Tuple[Track, List[Tuple[int, float]]]:
    tick = 0
    events: List[NoteEvent] = []
    tempos: List[Tuple[int, float]] = []
    active: Dict[Tuple[int, int], int] = {}   # (channel, pitch) -> open NoteOns
    program: Optional[int] = None
    name = ""
    ended = False

    for msg in mtrack:
        tick += msg.time
        if msg.is_meta:
            if msg.type == 'set_tempo':
                bpm = mido.tempo2bpm(msg.tempo)
                events.append(NoteEvent.tempo(tick, bpm))
                tempos.append((tick, bpm))
            elif msg.type == 'track_name':
                name = msg.name
            elif msg.type == 'end_of_track':
                # close dangling notes before the end marker
                for (ch, p), n in sorted(active.items()):
                    events.extend(NoteEvent.note_off(tick, ch, p) for _ in range(n))
                active.clear()
                events.append(NoteEvent.end_of_track(tick))
                ended = True
            continue

        if msg.type == 'note_on' and msg.velocity > 0:
            key = (msg.channel, msg.note)
            if active.get(key):
                # re-trigger without release: close the previous one first
                events.append(NoteEvent.note_off(tick, msg.channel, msg.note))
                active[key] -= 1
            events.append(NoteEvent.note_on(tick, msg.channel, msg.note, msg.velocity))
            active[key] = active.get(key, 0) + 1
        elif msg.type == 'note_off' or (msg.type == 'note_on' and msg.velocity == 0):
            key = (msg.channel, msg.note)
            if active.get(key):
                events.append(NoteEvent.note_off(tick, msg.channel, msg.note))
                active[key] -= 1
        elif msg.type == 'program_change' and program is None:
            program = msg.program

    if not ended:
        for (ch, p), n in sorted(active.items()):
            events.extend(NoteEvent.note_off(tick, ch, p) for _ in range(n))
        events.append(NoteEvent.end_of_track(tick))

    return Track(index=index, events=events, name=name, program=program), tempos


def parse_midi_to_song(path: str, index: int = -1, source: SongSource = SongSource.STATIC) -> Song:
    """Read a MIDI file into a Song keeping per-track tick events."""
    mid = mido.MidiFile(path)
    if mid.type == 2:
        logger.warning("%s: type 2 MIDI, tracks treated as simultaneous", path)

    tracks: List[Track] = []
    tempos: List[Tuple[int, float]] = []
    for i, mt in enumerate(mid.tracks):
        tr, tt = _convert_track(i, mt)
        tracks.append(tr)
        tempos.extend(tt)

    at_zero = [bpm for t, bpm in tempos if t == 0]
    default_bpm = at_zero[-1] if at_zero else 120.0   # MIDI default: 500000 us/beat
    title = os.path.splitext(os.path.basename(path))[0]

    song = Song(title=title, tracks=tuple(tracks), default_bpm=default_bpm,
                ticks_per_beat=mid.ticks_per_beat, index=index, source=source,
                filename=os.path.basename(path))
    logger.debug("Parsed %s: %d tracks, %.0f bpm, tpb=%d", path, len(tracks), default_bpm, mid.ticks_per_beat)
    return song
