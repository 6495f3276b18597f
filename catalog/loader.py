# catalog/loader.py
import logging
import os
from typing import List, Optional

from catalog.catalog import SongCatalog
from midi.parser import MIDI_EXTENSIONS, parse_midi_to_song
from notes.model import Song, SongSource

logger = logging.getLogger(__name__)


def _midi_files(directory: str) -> List[str]:
    return [os.path.join(directory, n) for n in sorted(os.listdir(directory))
            if n.lower().endswith(MIDI_EXTENSIONS)]


def load_static_songs(directory: Optional[str]) -> List[Song]:
    """Songs shipped with the player, in file-name order. Missing dir -> no songs."""
    if not directory or not os.path.isdir(directory):
        logger.info("No static song directory (%s)", directory)
        return []
    songs: List[Song] = []
    for path in _midi_files(directory):
        try:
            songs.append(parse_midi_to_song(path, index=len(songs), source=SongSource.STATIC))
        except (OSError, ValueError, EOFError) as e:
            logger.warning("Skipping %s: %s", path, e)
    logger.info("Loaded %d static songs from %s", len(songs), directory)
    return songs


def add_song_from_file(catalog: SongCatalog, path: str) -> int:
    if not path.lower().endswith(MIDI_EXTENSIONS):
        raise ValueError(f"Unsupported file type: {path}")
    song = parse_midi_to_song(path, source=SongSource.DYNAMIC)
    return catalog.append_dynamic(song)


def scan_directory(catalog: SongCatalog, directory: str) -> int:
    if not os.path.isdir(directory):
        raise NotADirectoryError(directory)
    added = 0
    for path in _midi_files(directory):
        try:
            add_song_from_file(catalog, path)
            added += 1
        except (OSError, ValueError, EOFError) as e:
            logger.warning("Failed to load %s: %s", path, e)
    logger.info("Added %d songs from %s", added, directory)
    return added
