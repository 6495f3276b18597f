import json
import logging

import pytest

from audio.synth import LogSink, open_sink
from config import AppConfig, AudioConfig, ScanMode, load_config
from main import apply_args, build_parser


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config(None)
        assert cfg == AppConfig()
        assert cfg.loop.scan_segment_ms == 30000
        assert cfg.loop.delay_between_songs_ms == 0
        assert cfg.scheduler.progress_interval_ms == 100.0

    def test_overlay_sections(self, tmp_path, caplog):
        path = tmp_path / "player.json"
        path.write_text(json.dumps({
            "loop": {"scan_mode": "progressive", "scan_segment_ms": 5000, "shuffle": True},
            "bus": {"channel": "studio"},
            "colors": {},
        }))
        with caplog.at_level(logging.WARNING):
            cfg = load_config(str(path))
        assert cfg.loop.scan_mode == ScanMode.PROGRESSIVE
        assert cfg.loop.scan_segment_ms == 5000
        assert cfg.bus.channel == "studio"
        assert cfg.bus.base_port == 47000
        assert "loop.shuffle" in caplog.text
        assert "colors" in caplog.text

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == AppConfig()

    def test_bad_scan_mode(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"loop": {"scan_mode": "sideways"}}))
        with pytest.raises(ValueError):
            load_config(str(path))


class TestCommandLine:
    def test_flags_override_config(self):
        args = build_parser().parse_args([
            "--mode", "scan", "--scan", "random", "--scan-seconds", "12.5", "--delay-ms", "250",
            "--loop-song", "--no-bus", "--no-audio", "--tracks", "0,2",
        ])
        cfg = apply_args(AppConfig(), args)
        assert cfg.loop.scan_mode == ScanMode.RANDOM_START
        assert cfg.loop.scan_segment_ms == 12500
        assert cfg.loop.delay_between_songs_ms == 250
        assert cfg.loop.loop_individual is True
        assert cfg.bus.enabled is False
        assert cfg.audio.enabled is False
        assert args.tracks == frozenset({0, 2})

    def test_progressive_scan_loops_the_playlist(self):
        args = build_parser().parse_args(["--scan", "progressive", "--growth", "linear"])
        cfg = apply_args(AppConfig(), args)
        assert cfg.loop.loop_playlist is True
        assert cfg.loop.progressive_growth == "linear"

    def test_all_tracks(self):
        assert build_parser().parse_args(["--tracks", "all"]).tracks is None


class TestSinks:
    def test_disabled_audio_logs_notes(self):
        assert isinstance(open_sink(AudioConfig(enabled=False)), LogSink)

    def test_log_sink_tracks_sounding_notes(self):
        s = LogSink()
        s.note_on(0, 60, 90)
        s.note_on(1, 62, 90)
        s.note_off(0, 60)
        s.note_on(0, 64, 90)
        s.all_notes_off(0)
        assert s.sounding == {(1, 62)}
        s.all_notes_off()
        assert s.sounding == set()
