# notes/tempo.py
from bisect import bisect_right
from fractions import Fraction
from typing import List, Optional, Tuple

from notes.model import EventKind, Song


class TempoMap:
    """Piecewise-constant tempo over ticks.

    Segment start times are kept as exact fractions so that converting a tick
    late in a long song carries no accumulated rounding.
    """
    def __init__(self, changes: List[Tuple[int, float]], ticks_per_beat: int, scale: float = 1.0):
        if ticks_per_beat <= 0:
            raise ValueError("ticks_per_beat must be positive")
        if scale <= 0:
            raise ValueError("tempo scale must be positive")
        self.ticks_per_beat = ticks_per_beat
        self.scale = Fraction(scale)

        # later change at the same tick wins
        merged: List[Tuple[int, float]] = []
        for tick, bpm in sorted(changes, key=lambda c: c[0]):
            if bpm <= 0:
                continue
            if merged and merged[-1][0] == tick:
                merged[-1] = (tick, bpm)
            else:
                merged.append((tick, bpm))
        if not merged or merged[0][0] != 0:
            raise ValueError("tempo map needs a tempo at tick 0")

        self.ticks = [t for t, _ in merged]
        self.bpms = [float(b) for _, b in merged]
        self._start_ms: List[Fraction] = [Fraction(0)]
        for i in range(1, len(merged)):
            span = self.ticks[i] - self.ticks[i - 1]
            self._start_ms.append(self._start_ms[-1] + span * self._ms_per_tick(i - 1))

    @classmethod
    def from_song(cls, song: Song, override_bpm: Optional[float] = None) -> "TempoMap":
        """Tempo changes from every track; an override scales the whole map by override/default."""
        changes = [(0, song.default_bpm)]
        for tr in song.tracks:
            changes.extend((e.tick, e.bpm) for e in tr.events if e.kind == EventKind.TEMPO and e.bpm)
        scale = 1.0 if override_bpm is None else float(override_bpm) / song.default_bpm
        return cls(changes, song.ticks_per_beat, scale)

    def _ms_per_tick(self, seg: int) -> Fraction:
        return Fraction(60000) / (Fraction(self.bpms[seg]) * self.scale * self.ticks_per_beat)

    def _segment(self, tick: int) -> int:
        return max(0, bisect_right(self.ticks, tick) - 1)

    def tick_to_ms(self, tick: int) -> float:
        seg = self._segment(tick)
        return float(self._start_ms[seg] + (tick - self.ticks[seg]) * self._ms_per_tick(seg))

    def bpm_at(self, tick: int) -> float:
        """Effective (scaled) tempo in force at `tick`."""
        return float(Fraction(self.bpms[self._segment(tick)]) * self.scale)

    @property
    def initial_bpm(self) -> float:
        return self.bpm_at(0)
