# input/console.py
import logging
import sys
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIN_BPM, MAX_BPM = 1, 500

HELP = ("commands: q quit | s stop | p pause/resume | n next | b previous | "
        "t, t<bpm> or <bpm> tempo | l list | o <path> load | h help")


class ConsoleControl:
    """Reads one command per line from a text stream and drives an App."""
    def __init__(self, app, stream=None, out: Callable[[str], None] = print):
        self.app = app
        self.stream = stream if stream is not None else sys.stdin
        self.out = out
        self._thread: Optional[threading.Thread] = None
        self._awaiting_tempo = False

    def start(self) -> "ConsoleControl":
        self._thread = threading.Thread(target=self._read_loop, name="console", daemon=True)
        self._thread.start()
        return self

    def _read_loop(self):
        for line in self.stream:
            try:
                if not self.handle_line(line):
                    return
            except Exception:
                logger.exception("Console command %r failed", line.strip())
        logger.debug("Console input closed")

    def handle_line(self, line: str) -> bool:
        """Apply one command. Returns False once the user asked to quit."""
        cmd = line.strip().lower()
        if self._awaiting_tempo:
            self._awaiting_tempo = False
            if cmd:
                self._apply_tempo(_parse_tempo(cmd), cmd)
            return True
        if not cmd:
            return True
        if cmd == "q":
            self.app.shutdown()
            return False
        if cmd == "s":
            self.app.stop()
        elif cmd == "p":
            self.app.toggle_pause()
        elif cmd == "n":
            self.app.next()
        elif cmd == "b":
            self.app.previous()
        elif cmd == "l":
            for row in self.app.song_lines():
                self.out(row)
        elif cmd.startswith("o "):
            path = line.strip()[2:].strip()
            self.out(f"added {self.app.load_path(path)} song(s)")
        elif cmd in ("h", "?"):
            self.out(HELP)
        elif cmd == "t":
            self._awaiting_tempo = True
            self.out(f"new tempo ({MIN_BPM}-{MAX_BPM} bpm):")
        else:
            bpm = _parse_tempo(cmd)
            if bpm is None:
                self.out(f"unknown command '{cmd}' ({HELP})")
            else:
                self._apply_tempo(bpm, cmd)
        return True

    def _apply_tempo(self, bpm: Optional[float], text: str):
        if bpm is None:
            self.out(f"not a tempo: '{text}'")
        elif not MIN_BPM <= bpm <= MAX_BPM:
            self.out(f"tempo must be {MIN_BPM}-{MAX_BPM} bpm")
        else:
            self.app.set_tempo(bpm)
            self.out(f"tempo {bpm:g} bpm")


def _parse_tempo(cmd: str) -> Optional[float]:
    text = cmd[1:] if cmd.startswith("t") else cmd
    try:
        return float(text)
    except ValueError:
        return None
