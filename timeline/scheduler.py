# timeline/scheduler.py
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple

from config import SchedulerConfig
from errors import InvalidStateTransition, SinkError
from notes.model import EventKind
from timeline.builder import Timeline, TimedEvent
from timeline.clock import MonotonicClock

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    FINISHED = "finished"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (RunState.FINISHED, RunState.STOPPED)


class EndReason(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Progress:
    song_index: int
    elapsed_ms: float
    total_ms: float
    event_index: int


@dataclass
class PlaybackState:
    """Mutable state of one scheduler run; only the owning Scheduler writes it."""
    song_index: int
    total_ms: float
    run_state: RunState = RunState.IDLE
    anchor_ms: float = 0.0          # clock time at which offset 0 would have played
    paused_total_ms: float = 0.0
    paused_at_ms: Optional[float] = None
    rate: float = 1.0               # live tempo factor on top of the timeline
    tempo_override: Optional[float] = None
    track_filter: Optional[frozenset] = None   # None = all
    current_bpm: float = 120.0
    cursor: int = 0
    touched_channels: Set[int] = field(default_factory=set)
    sink_errors: int = 0


class Scheduler:
    """Plays one Timeline on a dedicated timing thread.

    Event targets are `anchor + offset / rate`. Pausing shifts the anchor by
    the paused interval on resume, and a rate change re-anchors at the current
    position, so already dispatched events are never moved.
    """
    def __init__(self, timeline: Timeline, sink, clock=None, config: Optional[SchedulerConfig] = None,
                 on_progress: Optional[Callable[[Progress], None]] = None,
                 on_state: Optional[Callable[["Scheduler", RunState], None]] = None,
                 quit_event: Optional[threading.Event] = None):
        self.timeline = timeline
        self.sink = sink
        self.clock = clock or MonotonicClock()
        self.cfg = config or SchedulerConfig()
        self.on_progress = on_progress
        self.on_state = on_state
        self.quit_event = quit_event

        self.state = PlaybackState(song_index=timeline.song_index, total_ms=timeline.total_ms,
                                   current_bpm=timeline.reference_bpm,
                                   track_filter=timeline.tracks)
        self.end_reason: Optional[EndReason] = None
        self._cond = threading.Condition(threading.RLock())
        self._stop_reason: Optional[EndReason] = None
        self._active: Dict[Tuple[int, int], int] = {}
        self._last_progress = None
        self._thread: Optional[threading.Thread] = None
        self._runner: Optional[threading.Thread] = None
        self._done = threading.Event()

    # ---------- queries ----------
    @property
    def run_state(self) -> RunState:
        return self.state.run_state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def elapsed_ms(self) -> float:
        """Timeline position in ms, frozen while paused."""
        with self._cond:
            return self._elapsed_locked()

    def _elapsed_locked(self) -> float:
        st = self.state
        if st.run_state == RunState.IDLE:
            return 0.0
        now = st.paused_at_ms if st.paused_at_ms is not None else self.clock.now()
        return min(max(0.0, (now - st.anchor_ms) * st.rate), st.total_ms)

    def progress(self) -> Progress:
        with self._cond:
            return Progress(self.state.song_index, self._elapsed_locked(), self.state.total_ms, self.state.cursor)

    # ---------- control surface ----------
    def start(self, background: bool = True):
        with self._cond:
            if self.state.run_state != RunState.IDLE:
                raise InvalidStateTransition("start", self.state.run_state)
            self.state.run_state = RunState.PLAYING
            self.state.anchor_ms = self.clock.now()
        self._emit_state(RunState.PLAYING)
        if background:
            self._thread = threading.Thread(target=self._run, name=f"timing-{self.timeline.song_index}",
                                            daemon=True)
            self._thread.start()
        else:
            self._run()

    def pause(self):
        with self._cond:
            if self.state.run_state != RunState.PLAYING:
                raise InvalidStateTransition("pause", self.state.run_state)
            self.state.run_state = RunState.PAUSED
            self.state.paused_at_ms = self.clock.now()
            self._cond.notify_all()
        logger.debug("Paused '%s' at %.0f ms", self.timeline.title, self.elapsed_ms())
        self._emit_state(RunState.PAUSED)

    def resume(self):
        with self._cond:
            if self.state.run_state != RunState.PAUSED:
                raise InvalidStateTransition("resume", self.state.run_state)
            gap = self.clock.now() - self.state.paused_at_ms
            self.state.anchor_ms += gap
            self.state.paused_total_ms += gap
            self.state.paused_at_ms = None
            self.state.run_state = RunState.PLAYING
            self._cond.notify_all()
        self._emit_state(RunState.PLAYING)

    def set_rate(self, rate: float):
        """Scale the speed of everything not yet dispatched by `rate`."""
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        with self._cond:
            st = self.state
            ref = st.paused_at_ms if st.paused_at_ms is not None else self.clock.now()
            pos = (ref - st.anchor_ms) * st.rate
            st.anchor_ms = ref - pos / rate
            st.current_bpm = st.current_bpm / st.rate * rate
            st.rate = rate
            self._cond.notify_all()

    def set_tempo(self, bpm: float):
        if bpm <= 0:
            raise ValueError(f"bpm must be positive, got {bpm}")
        with self._cond:
            self.state.tempo_override = bpm
            self.set_rate(bpm / self.timeline.reference_bpm)
        logger.info("Tempo set to %.0f bpm (x%.3f)", bpm, self.state.rate)

    def stop(self, reason: EndReason = EndReason.STOPPED) -> RunState:
        """Stop immediately. Idempotent; blocks at most `stop_grace_s` for cleanup."""
        with self._cond:
            st = self.state.run_state
            if st.terminal:
                return st
            if st == RunState.IDLE:
                self.state.run_state = RunState.STOPPED
                self.end_reason = reason
                self._done.set()
                idle = True
            else:
                idle = False
                if self._stop_reason is None:
                    self._stop_reason = reason
                self._cond.notify_all()
        if idle:
            self._emit_state(RunState.STOPPED)
            return RunState.STOPPED

        if threading.current_thread() is not self._runner:
            if not self._done.wait(self.cfg.stop_grace_s):
                logger.warning("Timing thread for '%s' did not stop within %.1fs",
                               self.timeline.title, self.cfg.stop_grace_s)
        return self.state.run_state

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run is Finished or Stopped."""
        return self._done.wait(timeout)

    # ---------- timing loop ----------
    def _stop_pending(self) -> bool:
        if self._stop_reason is None and self.quit_event is not None and self.quit_event.is_set():
            self._stop_reason = EndReason.STOPPED
        return self._stop_reason is not None

    def _next_action(self):
        """Wait under the lock until something is due. Returns (action, payload)."""
        interval = self.cfg.progress_interval_ms
        with self._cond:
            while True:
                if self._stop_pending():
                    return "stop", None
                st = self.state
                if st.run_state == RunState.PAUSED:
                    self.clock.wait(self._cond, None if self.quit_event is None else interval)
                    continue
                if st.cursor >= len(self.timeline.events):
                    return "finish", None

                now = self.clock.now()
                ev = self.timeline.events[st.cursor]
                target = st.anchor_ms + ev.offset_ms / st.rate
                if now + self.cfg.tolerance_ms >= target:
                    st.cursor += 1
                    return "dispatch", (st.cursor - 1, ev)

                next_report = (self._last_progress if self._last_progress is not None else now) + interval
                if now >= next_report:
                    return "progress", None
                self.clock.wait(self._cond, min(target, next_report) - now)

    def _run(self):
        self._runner = threading.current_thread()
        tl = self.timeline
        logger.info("Playing '%s' (%d events, %.0f ms)", tl.title, len(tl), tl.total_ms)
        try:
            for _track, (chan, prog) in sorted(tl.programs.items()):
                self._call_sink("program_change", chan, prog)
            self._report()
            while True:
                action, payload = self._next_action()
                if action == "dispatch":
                    idx, ev = payload
                    self._dispatch(ev)
                    if self._due_report():
                        self._report()
                elif action == "progress":
                    self._report()
                elif action == "finish":
                    self._release_hanging()
                    self._report(final=True)
                    self._finish(RunState.FINISHED, EndReason.COMPLETED)
                    return
                else:
                    self._cleanup()
                    self._finish(RunState.STOPPED, self._stop_reason)
                    return
        except Exception:
            logger.exception("Timing loop for '%s' failed", tl.title)
            self._cleanup()
            self._finish(RunState.STOPPED, EndReason.STOPPED)

    def _dispatch(self, ev: TimedEvent):
        st = self.state
        if ev.kind == EventKind.NOTE_ON:
            st.touched_channels.add(ev.channel)
            key = (ev.channel, ev.pitch)
            self._active[key] = self._active.get(key, 0) + 1
            self._call_sink("note_on", ev.channel, ev.pitch, ev.velocity)
        elif ev.kind == EventKind.NOTE_OFF:
            key = (ev.channel, ev.pitch)
            if self._active.get(key):
                self._active[key] -= 1
                if not self._active[key]:
                    del self._active[key]
            self._call_sink("note_off", ev.channel, ev.pitch)
        elif ev.kind == EventKind.TEMPO:
            with self._cond:
                st.current_bpm = ev.bpm * st.rate
            logger.debug("Tempo change to %.1f bpm at %.0f ms", st.current_bpm, ev.offset_ms)

    def _release_hanging(self):
        for (ch, p), n in sorted(self._active.items()):
            for _ in range(n):
                self._call_sink("note_off", ch, p)
        self._active.clear()

    def _cleanup(self):
        """One all-notes-off per touched channel."""
        self._active.clear()
        for ch in sorted(self.state.touched_channels):
            self._call_sink("all_notes_off", ch)

    def _finish(self, final: RunState, reason: EndReason):
        with self._cond:
            self.state.run_state = final
            self.end_reason = reason
            self._cond.notify_all()
        logger.info("'%s' %s (%s)", self.timeline.title, final.value, reason.value)
        self._done.set()
        self._emit_state(final)

    def _call_sink(self, op: str, *args):
        fn = getattr(self.sink, op, None)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception as e:
            self.state.sink_errors += 1
            logger.warning("%s", SinkError(op, e))

    # ---------- notifications ----------
    def _due_report(self) -> bool:
        return self._last_progress is None or \
            self.clock.now() - self._last_progress >= self.cfg.progress_interval_ms

    def _report(self, final: bool = False):
        self._last_progress = self.clock.now()
        if self.on_progress is None:
            return
        p = self.progress()
        if final:
            p = Progress(p.song_index, p.total_ms, p.total_ms, self.state.cursor)
        try:
            self.on_progress(p)
        except Exception:
            logger.exception("Progress listener failed")

    def _emit_state(self, state: RunState):
        if self.on_state is None:
            return
        try:
            self.on_state(self, state)
        except Exception:
            logger.exception("State listener failed")
