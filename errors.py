# errors.py
from typing import Iterable, Optional


class PlayerError(Exception):
    """Base class for every error raised by the player core."""


class EmptyTimeline(PlayerError):
    """The selected tracks of a song produced no playable note events."""
    def __init__(self, song_title: str, tracks: Optional[Iterable[int]] = None):
        self.song_title = song_title
        self.tracks = None if tracks is None else sorted(tracks)
        sel = "all tracks" if self.tracks is None else f"tracks {self.tracks}"
        super().__init__(f"No playable events in '{song_title}' ({sel})")


class InvalidTrackSelection(PlayerError):
    """Track indices outside the song. Reported as a warning, never raised by build."""
    def __init__(self, ignored: Iterable[int], track_count: int):
        self.ignored = sorted(ignored)
        self.track_count = track_count
        super().__init__(f"Ignoring track indices {self.ignored} (song has {track_count} tracks)")


class TransportUnavailable(PlayerError):
    """The cross-process bus transport could not be opened."""


class SinkError(PlayerError):
    """The note sink rejected an event."""
    def __init__(self, op: str, cause: BaseException):
        self.op = op
        self.cause = cause
        super().__init__(f"Note sink failed on {op}: {cause}")


class SongNotFound(PlayerError, KeyError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(f"No song at index {index}")

    def __str__(self):
        return self.args[0]


class InvalidStateTransition(PlayerError):
    def __init__(self, op: str, state):
        self.op = op
        self.state = state
        super().__init__(f"Cannot {op} while {getattr(state, 'value', state)}")
