# app.py
import logging
import os
import threading
from typing import Callable, List, Optional

from bus import messages as msgs
from bus.bus import COMMANDS, STATUSES, CommandBus
from catalog.catalog import SongCatalog
from catalog.loader import add_song_from_file, scan_directory
from config import AppConfig, LoopConfig
from notes.model import SongSource
from playlist.orchestrator import Orchestrator, PlayMode, format_duration
from timeline.scheduler import RunState
from utils.crashlog import log_exception

logger = logging.getLogger(__name__)


class App:
    """Hosts the catalog, the orchestrator and the bus for one player.

    Local callers (console, main) use the methods below; bus commands are
    mapped onto the same methods, so both paths behave identically.
    """
    def __init__(self, cfg: AppConfig, catalog: SongCatalog, sink,
                 bus: Optional[CommandBus] = None, clock=None):
        self.cfg = cfg
        self.catalog = catalog
        self.sink = sink
        self.bus = bus
        self._listeners: List[Callable[[msgs.Message], None]] = []
        self.orchestrator = Orchestrator(catalog, sink, publish=self.publish, clock=clock,
                                         scheduler_config=cfg.scheduler)
        self.loop: LoopConfig = cfg.loop
        self.shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

        catalog.on_change(lambda n: self.publish(msgs.SongListUpdated(n)))
        if bus is not None:
            bus.subscribe(self.handle_command, COMMANDS)

    # ---------- status fan-out ----------
    def publish(self, msg: msgs.Message):
        if self.bus is not None:
            self.bus.publish(msg)
            return
        for fn in list(self._listeners):
            try:
                fn(msg)
            except Exception:
                logger.exception("Status listener failed")

    def subscribe(self, fn: Callable[[msgs.Message], None]):
        """Receive status messages, from the bus when there is one."""
        if self.bus is not None:
            return self.bus.subscribe(fn, STATUSES)
        self._listeners.append(fn)
        return lambda: self._listeners.remove(fn) if fn in self._listeners else None

    # ---------- control surface ----------
    @property
    def playing(self) -> bool:
        return self.orchestrator.running

    def start(self, mode: PlayMode = PlayMode.ALL, loop: Optional[LoopConfig] = None, song: int = 0,
              tracks=None, tempo: Optional[float] = None):
        """Begin a playlist run on its own thread, ending any run in progress first."""
        with self._start_lock:
            self._end_run()
            if loop is not None:
                self.loop = loop
            self.orchestrator.reset()
            self._thread = threading.Thread(target=self._run, args=(mode, self.loop, song, tracks, tempo),
                                            name="orchestrator", daemon=True)
            self._thread.start()

    def _run(self, mode, loop, song, tracks, tempo):
        try:
            self.orchestrator.run(mode, loop, song, tracks, tempo)
        except Exception as e:
            logger.exception("Playlist run failed")
            log_exception("orchestrator", e)

    def _end_run(self):
        t = self._thread
        if t is not None and t.is_alive():
            self.orchestrator.stop()
            t.join(self.cfg.scheduler.stop_grace_s * 2)
        self._thread = None

    def stop(self):
        self.orchestrator.stop()

    def pause(self) -> bool:
        return self.orchestrator.pause()

    def resume(self) -> bool:
        return self.orchestrator.resume()

    def toggle_pause(self) -> bool:
        cur = self.orchestrator.current
        if cur is not None and cur.run_state == RunState.PAUSED:
            return self.resume()
        return self.pause()

    def set_tempo(self, bpm: float):
        self.orchestrator.set_tempo(bpm)

    def set_track_filter(self, tracks):
        """None selects all tracks. A song in progress restarts with the new selection."""
        self.orchestrator.track_filter = frozenset(tracks) if tracks else None
        if self.orchestrator.current is not None:
            self.orchestrator.restart()

    def next(self):
        self.orchestrator.next()

    def previous(self):
        self.orchestrator.previous()

    def play(self, song_index: int, tracks=None, tempo: Optional[float] = None):
        if self.orchestrator.running:
            self.orchestrator.play(song_index, tracks, tempo)
        else:
            self.start(PlayMode.SINGLE, song=song_index, tracks=tracks, tempo=tempo)

    def shutdown(self):
        logger.info("Shutdown requested")
        self.shutdown_event.set()
        self.orchestrator.stop()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """True once shutdown was requested or the current run has ended."""
        if self.shutdown_event.wait(timeout):
            return True
        t = self._thread
        return t is None or not t.is_alive()

    def close(self):
        self._end_run()
        if self.bus is not None:
            self.bus.close()
        try:
            self.sink.close()
        except Exception:
            logger.exception("Closing note sink failed")

    # ---------- catalog ----------
    def load_path(self, path: str) -> int:
        """Add a MIDI file or every MIDI file in a directory. Returns the number added."""
        try:
            if os.path.isdir(path):
                return scan_directory(self.catalog, path)
            add_song_from_file(self.catalog, path)
            return 1
        except (OSError, ValueError, EOFError) as e:
            logger.warning("Could not load %s: %s", path, e)
            return 0

    def song_lines(self) -> List[str]:
        lines = []
        for s in self.catalog.list():
            tag = "*" if s.source == SongSource.DYNAMIC else " "
            lines.append(f"{s.index:3d}{tag} {s.title}  [{s.track_count} tracks, {format_duration(s.duration_ms)}]")
        return lines

    def describe(self) -> str:
        """One line of player state, for crash reports."""
        sched = self.orchestrator.current
        if sched is None:
            return f"idle, {len(self.catalog)} songs"
        return (f"song {sched.timeline.song_index} '{sched.timeline.title}' "
                f"{sched.run_state.value} at {format_duration(sched.elapsed_ms())}")

    # ---------- bus commands ----------
    def handle_command(self, msg: msgs.Message):
        logger.debug("Command %s", msg)
        try:
            if isinstance(msg, msgs.Play):
                self.play(msg.song_index, msg.tracks, msg.tempo)
            elif isinstance(msg, msgs.Stop):
                self.stop()
            elif isinstance(msg, msgs.Pause):
                self.pause()
            elif isinstance(msg, msgs.Resume):
                self.resume()
            elif isinstance(msg, msgs.Next):
                self.next()
            elif isinstance(msg, msgs.Previous):
                self.previous()
            elif isinstance(msg, msgs.SetTempo):
                self.set_tempo(msg.bpm)
            elif isinstance(msg, msgs.Shutdown):
                self.shutdown()
        except ValueError as e:
            logger.warning("Rejected %s: %s", type(msg).__name__, e)
