import pytest

from catalog.catalog import SongCatalog
from catalog.loader import add_song_from_file, load_static_songs, scan_directory
from conftest import simple_song
from errors import SongNotFound
from notes.model import SongSource


@pytest.fixture
def catalog():
    return SongCatalog([simple_song("a"), simple_song("b")])


class TestSongCatalog:
    def test_static_songs_keep_embedding_order(self, catalog):
        assert [(s.index, s.title, s.source) for s in catalog.list()] == [
            (0, "a", SongSource.STATIC), (1, "b", SongSource.STATIC)]

    def test_dynamic_songs_follow_static(self, catalog):
        assert catalog.append_dynamic(simple_song("c")) == 2
        assert catalog.append_dynamic(simple_song("d")) == 3
        assert catalog.get(3).title == "d"
        assert catalog.get(3).source == SongSource.DYNAMIC
        assert (catalog.static_count, catalog.dynamic_count, len(catalog)) == (2, 2, 4)

    def test_clear_dynamic_compacts(self, catalog):
        catalog.append_dynamic(simple_song("c"))
        assert catalog.clear_dynamic() == 1
        assert [s.title for s in catalog.list()] == ["a", "b"]
        assert catalog.append_dynamic(simple_song("e")) == 2
        assert catalog.get(0).title == "a"

    def test_missing_index(self, catalog):
        with pytest.raises(SongNotFound) as exc:
            catalog.get(9)
        assert exc.value.index == 9
        with pytest.raises(KeyError):
            catalog.get(-1)

    def test_find_is_case_insensitive(self, catalog):
        assert catalog.find("B").index == 1
        assert catalog.find("zzz") is None

    def test_listeners_get_song_count(self, catalog):
        counts = []
        catalog.on_change(counts.append)
        catalog.on_change(lambda n: 1 / 0)
        catalog.append_dynamic(simple_song("c"))
        catalog.clear_dynamic()
        assert counts == [3, 2]

    def test_summary_duration(self, catalog):
        assert catalog.list()[0].duration_ms == 1000.0


def _write_midi(path, notes=((0, 480, 60),)):
    import mido
    mid = mido.MidiFile(ticks_per_beat=480)
    tr = mido.MidiTrack()
    mid.tracks.append(tr)
    now = 0
    for start, end, pitch in notes:
        tr.append(mido.Message("note_on", note=pitch, velocity=90, time=start - now))
        tr.append(mido.Message("note_off", note=pitch, velocity=0, time=end - start))
        now = end
    mid.save(str(path))
    return path


class TestLoader:
    def test_static_dir_sorted_and_bad_files_skipped(self, tmp_path):
        _write_midi(tmp_path / "b.mid")
        _write_midi(tmp_path / "a.mid")
        (tmp_path / "broken.mid").write_bytes(b"definitely not a midi file")
        (tmp_path / "notes.txt").write_text("ignored")
        songs = load_static_songs(str(tmp_path))
        assert [s.title for s in songs] == ["a", "b"]

    def test_missing_static_dir(self, tmp_path):
        assert load_static_songs(str(tmp_path / "nope")) == []
        assert load_static_songs(None) == []

    def test_dynamic_file_and_directory(self, tmp_path, catalog):
        path = _write_midi(tmp_path / "one.midi")
        assert add_song_from_file(catalog, str(path)) == 2
        sub = tmp_path / "more"
        sub.mkdir()
        _write_midi(sub / "x.mid")
        _write_midi(sub / "y.mid")
        assert scan_directory(catalog, str(sub)) == 2
        assert [s.title for s in catalog.list()] == ["a", "b", "one", "x", "y"]

    def test_unsupported_extension(self, tmp_path, catalog):
        p = tmp_path / "song.wav"
        p.write_bytes(b"RIFF")
        with pytest.raises(ValueError):
            add_song_from_file(catalog, str(p))

    def test_scan_requires_directory(self, tmp_path, catalog):
        with pytest.raises(NotADirectoryError):
            scan_directory(catalog, str(tmp_path / "missing"))
