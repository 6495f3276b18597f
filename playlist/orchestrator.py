# playlist/orchestrator.py
import logging
import random
import threading
import time
from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from bus import messages as msgs
from catalog.catalog import SongCatalog
from config import LoopConfig, ScanMode, SchedulerConfig
from errors import EmptyTimeline, InvalidStateTransition, SongNotFound
from timeline.builder import build_timeline
from timeline.clock import MonotonicClock
from timeline.scheduler import EndReason, Progress, Scheduler

logger = logging.getLogger(__name__)


class PlayMode(str, Enum):
    SINGLE = "single"
    ALL = "all"
    RANDOM = "random"
    SCAN = "scan"


# ---------- progressive scan growth ----------
# A policy maps (base segment ms, position in the pass) -> segment ms.
GrowthPolicy = Callable[[int, int], int]


def constant_growth(base_ms: int, position: int) -> int:
    return base_ms


def linear_growth(step_ms: int) -> GrowthPolicy:
    def grow(base_ms: int, position: int) -> int:
        return base_ms + step_ms * position
    return grow


def doubling_growth(base_ms: int, position: int) -> int:
    return base_ms * (2 ** position)


def make_growth_policy(name: str, step_ms: int = 10000) -> GrowthPolicy:
    policies: Dict[str, GrowthPolicy] = {
        "constant": constant_growth,
        "linear": linear_growth(step_ms),
        "doubling": doubling_growth,
    }
    try:
        return policies[name]
    except KeyError:
        raise ValueError(f"Unknown growth policy '{name}' (choose from {sorted(policies)})") from None


def format_duration(ms: float) -> str:
    seconds = int(ms) // 1000
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m{seconds:02d}s" if minutes else f"{seconds}s"


class Orchestrator:
    """Sequences songs through one Scheduler at a time.

    `run` blocks the calling thread until the playlist is exhausted or quit is
    requested. Control methods may be called from any other thread.
    """
    def __init__(self, catalog: SongCatalog, sink, publish: Optional[Callable[[msgs.Message], None]] = None,
                 clock=None, scheduler_config: Optional[SchedulerConfig] = None,
                 rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.sink = sink
        self.publish = publish or (lambda m: None)
        self.clock = clock or MonotonicClock()
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.rng = rng or random.Random()
        self.growth: Optional[GrowthPolicy] = None

        self.quit_event = threading.Event()
        self._lock = threading.Lock()
        self._current: Optional[Scheduler] = None
        self._pending = None          # "next" | "previous" | msgs.Play
        self._running = threading.Event()
        self.track_filter = None
        self.tempo_override: Optional[float] = None

    # ---------- control surface ----------
    @property
    def running(self) -> bool:
        return self._running.is_set()

    @property
    def current(self) -> Optional[Scheduler]:
        return self._current

    def request_quit(self):
        """Ends the run: between songs, and mid-song through the scheduler."""
        self.quit_event.set()
        with self._lock:
            cur = self._current
        if cur is not None:
            cur.stop(EndReason.STOPPED)

    stop = request_quit

    def _skip(self, pending):
        with self._lock:
            self._pending = pending
            cur = self._current
        if cur is not None:
            cur.stop(EndReason.SKIPPED)

    def next(self):
        self._skip("next")

    def previous(self):
        self._skip("previous")

    def restart(self):
        """Replay the current entry from its start, picking up a new track filter or tempo."""
        self._skip("restart")

    def play(self, song_index: int, tracks=None, tempo: Optional[float] = None):
        """Switch the running playlist to one song."""
        self._skip(msgs.Play(song_index, tracks, tempo))

    def pause(self) -> bool:
        cur = self._current
        if cur is None:
            return False
        try:
            cur.pause()
        except InvalidStateTransition as e:
            logger.warning("%s", e)
            return False
        self.publish(msgs.Paused(cur.timeline.song_index))
        return True

    def resume(self) -> bool:
        cur = self._current
        if cur is None:
            return False
        try:
            cur.resume()
        except InvalidStateTransition as e:
            logger.warning("%s", e)
            return False
        self.publish(msgs.Resumed(cur.timeline.song_index))
        return True

    def set_tempo(self, bpm: float):
        """Applies to the song playing now and to every later song in this run."""
        if bpm <= 0:
            raise ValueError(f"bpm must be positive, got {bpm}")
        self.tempo_override = bpm
        cur = self._current
        if cur is not None and not cur.run_state.terminal:
            cur.set_tempo(bpm)
        self.publish(msgs.TempoChanged(bpm))

    # ---------- sequencing ----------
    def _order(self, mode: PlayMode, start_index: int) -> List[int]:
        n = len(self.catalog)
        if mode == PlayMode.SINGLE:
            return [start_index]
        if mode == PlayMode.RANDOM:
            return self.rng.sample(range(n), n)
        return list(range(n))

    def reset(self):
        """Clear the quit signal and any queued skip before a new run."""
        with self._lock:
            self.quit_event.clear()
            self._pending = None

    def _take_pending(self):
        with self._lock:
            p, self._pending = self._pending, None
        return p

    def run(self, mode: PlayMode = PlayMode.ALL, loop: Optional[LoopConfig] = None, start_index: int = 0,
            track_filter=None, tempo_override: Optional[float] = None):
        loop = loop or LoopConfig()
        if mode == PlayMode.SCAN and loop.scan_mode == ScanMode.NONE:
            loop = replace(loop, scan_mode=ScanMode.SEQUENTIAL)
        self.growth = make_growth_policy(loop.progressive_growth, loop.progressive_step_ms)
        self.track_filter = track_filter
        self.tempo_override = tempo_override
        self._running.set()
        logger.info("Playlist run: mode=%s loop_playlist=%s loop_song=%s delay=%dms scan=%s",
                    mode.value, loop.loop_playlist, loop.loop_individual,
                    loop.delay_between_songs_ms, loop.scan_mode.value)
        try:
            self._run(mode, loop, start_index)
        finally:
            self._running.clear()
            logger.info("Playlist run finished")

    def _run(self, mode: PlayMode, loop: LoopConfig, start_index: int):
        played_any = False
        while not self.quit_event.is_set():
            if not len(self.catalog):
                logger.warning("Catalog is empty, nothing to play")
                return
            order = self._order(mode, start_index)
            pos = start_index if mode in (PlayMode.ALL, PlayMode.SCAN) else 0
            start_index = 0
            last_segment = 0
            started_in_pass = 0
            repeat = False
            switched = False

            while pos < len(order) and not self.quit_event.is_set():
                pending = self._take_pending()
                if isinstance(pending, msgs.Play):
                    mode, order, pos = PlayMode.SINGLE, [pending.song_index], 0
                    self.track_filter = pending.tracks
                    self.tempo_override = pending.tempo or self.tempo_override
                    repeat = False

                # individual-loop repeats skip the inter-song delay unless configured
                if played_any and (not repeat or loop.delay_between_repeats):
                    self._delay(loop.delay_between_songs_ms)
                    if self.quit_event.is_set():
                        return

                idx = order[pos]
                segment = None
                if mode == PlayMode.SCAN:
                    segment = self._segment_ms(loop, pos, last_segment)
                    last_segment = segment
                reason = self._play_one(idx, loop, segment)
                if reason is not None:
                    played_any = True
                    started_in_pass += 1

                repeat = False
                pending = self._take_pending()
                if pending == "next":
                    pos += 1
                elif pending == "restart":
                    repeat = True
                elif pending == "previous":
                    pos = max(0, pos - 1)
                elif isinstance(pending, msgs.Play):
                    with self._lock:
                        self._pending = pending
                    switched = True
                    break
                elif reason == EndReason.STOPPED:
                    return
                elif reason == EndReason.COMPLETED and loop.loop_individual and mode != PlayMode.SCAN:
                    repeat = True
                else:
                    pos += 1

            if switched:
                mode = PlayMode.SINGLE
                continue
            if not loop.loop_playlist:
                return
            if not started_in_pass:
                logger.warning("Nothing playable in the playlist, stopping")
                return
            logger.info("Restarting playlist")

    def _segment_ms(self, loop: LoopConfig, pos: int, last: int) -> int:
        base = loop.scan_segment_ms
        if loop.scan_mode != ScanMode.PROGRESSIVE:
            return base
        # never shrink within a pass, whatever the policy returns
        return max(last, int(self.growth(base, pos)))

    def _scan_start(self, loop: LoopConfig, duration: float, segment: int) -> float:
        if loop.scan_mode == ScanMode.RANDOM_START and duration > segment:
            return self.rng.random() * (duration - segment)
        return 0.0

    def _delay(self, ms: int):
        if ms <= 0:
            time.sleep(0)   # let command handlers run between songs
            return
        self.clock.wait(self.quit_event, ms)

    def _play_one(self, idx: int, loop: LoopConfig, segment: Optional[int]) -> Optional[EndReason]:
        try:
            song = self.catalog.get(idx)
        except SongNotFound as e:
            logger.warning("%s, skipping", e)
            return None

        try:
            tl = build_timeline(song, self.track_filter, self.tempo_override)
            if segment is not None:
                # offsets are drawn on the played (tempo-scaled) time axis
                full_ms = tl.total_ms
                start = self._scan_start(loop, full_ms, segment)
                logger.info("Scan '%s': %s from %s of %s", song.title, format_duration(segment),
                            format_duration(start), format_duration(full_ms))
                tl = tl.window(start, segment)
        except EmptyTimeline as e:
            logger.warning("%s, skipping", e)
            return None

        def on_progress(p: Progress):
            self.publish(msgs.SongProgress(p.song_index, p.elapsed_ms, p.total_ms))

        sched = Scheduler(tl, self.sink, clock=self.clock, config=self.scheduler_config,
                          on_progress=on_progress, quit_event=self.quit_event)
        with self._lock:
            if self.quit_event.is_set() or self._pending is not None:
                return None
            self._current = sched
        self.publish(msgs.SongStarted(idx, song.title, tl.total_ms))
        try:
            try:
                sched.start()
            except InvalidStateTransition:
                # a command stopped it between SongStarted and start
                if not sched.done:
                    raise
            sched.wait()
        finally:
            with self._lock:
                self._current = None
        reason = sched.end_reason or EndReason.STOPPED
        self.publish(msgs.SongEnded(idx, reason))
        logger.info("Song %d '%s' ended: %s", idx, song.title, reason.value)
        return reason
