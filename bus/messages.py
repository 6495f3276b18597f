# bus/messages.py
"""Command and status messages and their fixed-size wire frame.

Every message travels as one FRAME: a tag plus the same fixed payload
fields, unused fields zeroed. No variable-length encoding.

    magic  2s   b"MP"
    ver    B
    tag    B
    sender I    producer id (drops own echoes, FIFO per producer)
    seq    I    per-producer sequence number
    ts     Q    producer wall clock, ms
    index  i    song index / count
    code   B    small enum (end reason)
    a      d    float payload (bpm, elapsed, duration)
    b      d    second float payload (total)
    mask   Q    track bitmask, 0 = all tracks
    text   48s  utf-8 title, truncated
"""
import logging
import struct
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Dict, FrozenSet, Optional, Type

from timeline.scheduler import EndReason

logger = logging.getLogger(__name__)

MAGIC = b"MP"
VERSION = 1
FRAME = struct.Struct("<2sBBIIQiBddQ48s")
MAX_MASK_TRACKS = 64
TEXT_BYTES = 48

_REASONS = [EndReason.COMPLETED, EndReason.SKIPPED, EndReason.STOPPED]


class Tag(IntEnum):
    # commands
    PLAY = 1
    STOP = 2
    PAUSE = 3
    RESUME = 4
    NEXT = 5
    PREVIOUS = 6
    SET_TEMPO = 7
    SHUTDOWN = 8
    # statuses
    SONG_STARTED = 64
    PROGRESS = 65
    SONG_ENDED = 66
    HEARTBEAT = 67
    PAUSED = 68
    RESUMED = 69
    TEMPO_CHANGED = 70
    SONG_LIST_UPDATED = 71


_REGISTRY: Dict[int, Type["Message"]] = {}


def _register(cls):
    _REGISTRY[int(cls.tag)] = cls
    return cls


class Message:
    tag: ClassVar[Tag]
    is_command: ClassVar[bool] = False

    # (index, code, a, b, mask, text)
    def payload(self):
        return 0, 0, 0.0, 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls()


def tracks_to_mask(tracks: Optional[FrozenSet[int]]) -> int:
    if not tracks:
        return 0
    mask = 0
    for t in tracks:
        if 0 <= t < MAX_MASK_TRACKS:
            mask |= 1 << t
        else:
            logger.warning("Track %d cannot be sent on the bus (max %d)", t, MAX_MASK_TRACKS - 1)
    return mask


def mask_to_tracks(mask: int) -> Optional[FrozenSet[int]]:
    if not mask:
        return None
    return frozenset(i for i in range(MAX_MASK_TRACKS) if mask >> i & 1)


# ---------- commands ----------

@_register
@dataclass(frozen=True)
class Play(Message):
    tag: ClassVar[Tag] = Tag.PLAY
    is_command: ClassVar[bool] = True
    song_index: int
    tracks: Optional[FrozenSet[int]] = None
    tempo: Optional[float] = None

    def payload(self):
        return self.song_index, 0, self.tempo or 0.0, 0.0, tracks_to_mask(self.tracks), ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index, mask_to_tracks(mask), a or None)


@_register
@dataclass(frozen=True)
class Stop(Message):
    tag: ClassVar[Tag] = Tag.STOP
    is_command: ClassVar[bool] = True


@_register
@dataclass(frozen=True)
class Pause(Message):
    tag: ClassVar[Tag] = Tag.PAUSE
    is_command: ClassVar[bool] = True


@_register
@dataclass(frozen=True)
class Resume(Message):
    tag: ClassVar[Tag] = Tag.RESUME
    is_command: ClassVar[bool] = True


@_register
@dataclass(frozen=True)
class Next(Message):
    tag: ClassVar[Tag] = Tag.NEXT
    is_command: ClassVar[bool] = True


@_register
@dataclass(frozen=True)
class Previous(Message):
    tag: ClassVar[Tag] = Tag.PREVIOUS
    is_command: ClassVar[bool] = True


@_register
@dataclass(frozen=True)
class SetTempo(Message):
    tag: ClassVar[Tag] = Tag.SET_TEMPO
    is_command: ClassVar[bool] = True
    bpm: float

    def payload(self):
        return 0, 0, float(self.bpm), 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(a)


@_register
@dataclass(frozen=True)
class Shutdown(Message):
    tag: ClassVar[Tag] = Tag.SHUTDOWN
    is_command: ClassVar[bool] = True


# ---------- statuses ----------

@_register
@dataclass(frozen=True)
class SongStarted(Message):
    tag: ClassVar[Tag] = Tag.SONG_STARTED
    song_index: int
    title: str
    duration_ms: float

    def payload(self):
        return self.song_index, 0, float(self.duration_ms), 0.0, 0, self.title

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index, text, a)


@_register
@dataclass(frozen=True)
class SongProgress(Message):
    tag: ClassVar[Tag] = Tag.PROGRESS
    song_index: int
    elapsed_ms: float
    total_ms: float

    def payload(self):
        return self.song_index, 0, float(self.elapsed_ms), float(self.total_ms), 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index, a, b)


@_register
@dataclass(frozen=True)
class SongEnded(Message):
    tag: ClassVar[Tag] = Tag.SONG_ENDED
    song_index: int
    reason: EndReason

    def payload(self):
        return self.song_index, _REASONS.index(self.reason), 0.0, 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index, _REASONS[code])


@_register
@dataclass(frozen=True)
class Heartbeat(Message):
    tag: ClassVar[Tag] = Tag.HEARTBEAT
    timestamp_ms: int

    def payload(self):
        return 0, 0, 0.0, 0.0, int(self.timestamp_ms), ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(mask)


@_register
@dataclass(frozen=True)
class Paused(Message):
    tag: ClassVar[Tag] = Tag.PAUSED
    song_index: int

    def payload(self):
        return self.song_index, 0, 0.0, 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index)


@_register
@dataclass(frozen=True)
class Resumed(Paused):
    tag: ClassVar[Tag] = Tag.RESUMED


@_register
@dataclass(frozen=True)
class TempoChanged(Message):
    tag: ClassVar[Tag] = Tag.TEMPO_CHANGED
    bpm: float

    def payload(self):
        return 0, 0, float(self.bpm), 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(a)


@_register
@dataclass(frozen=True)
class SongListUpdated(Message):
    tag: ClassVar[Tag] = Tag.SONG_LIST_UPDATED
    count: int

    def payload(self):
        return self.count, 0, 0.0, 0.0, 0, ""

    @classmethod
    def from_payload(cls, index, code, a, b, mask, text):
        return cls(index)


# ---------- framing ----------

@dataclass(frozen=True)
class Envelope:
    sender: int
    seq: int
    timestamp_ms: int
    message: Message


def _fit_text(text: str) -> bytes:
    raw = text.encode("utf-8")[:TEXT_BYTES]
    # don't cut a multi-byte character in half
    return raw.decode("utf-8", "ignore").encode("utf-8")


def encode(msg: Message, sender: int = 0, seq: int = 0, timestamp_ms: Optional[int] = None) -> bytes:
    index, code, a, b, mask, text = msg.payload()
    ts = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    return FRAME.pack(MAGIC, VERSION, int(msg.tag), sender & 0xFFFFFFFF, seq & 0xFFFFFFFF, ts,
                      int(index), int(code), float(a), float(b), int(mask), _fit_text(text))


def decode(frame: bytes) -> Envelope:
    if len(frame) != FRAME.size:
        raise ValueError(f"frame is {len(frame)} bytes, expected {FRAME.size}")
    magic, ver, tag, sender, seq, ts, index, code, a, b, mask, text = FRAME.unpack(frame)
    if magic != MAGIC or ver != VERSION:
        raise ValueError("not a player frame")
    cls = _REGISTRY.get(tag)
    if cls is None:
        raise ValueError(f"unknown tag {tag}")
    title = text.rstrip(b"\0").decode("utf-8", "replace")
    return Envelope(sender, seq, ts, cls.from_payload(index, code, a, b, mask, title))
