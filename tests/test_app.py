import itertools
import time

import pytest

from app import App
from bus import messages as msgs
from bus.bus import COMMANDS, STATUSES, CommandBus
from bus.transport import LocalTransport
from catalog.catalog import SongCatalog
from config import AppConfig, SchedulerConfig
from conftest import simple_song
from input.console import ConsoleControl
from playlist.orchestrator import PlayMode
from timeline.scheduler import EndReason

_channels = itertools.count()


def _wait_for(pred, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.005)
    return False


@pytest.fixture
def cfg():
    return AppConfig(scheduler=SchedulerConfig(tolerance_ms=0.0))


@pytest.fixture
def app(cfg, clock, sink):
    catalog = SongCatalog([simple_song(f"s{i}", 1000) for i in range(3)])
    a = App(cfg, catalog, sink, clock=clock)
    yield a
    a.close()


class TestApp:
    def test_run_publishes_lifecycle(self, app):
        seen = []
        app.subscribe(seen.append)
        app.start(PlayMode.ALL)
        assert _wait_for(lambda: app.wait(0))
        assert [m.song_index for m in seen if isinstance(m, msgs.SongEnded)] == [0, 1, 2]

    def test_play_command_starts_single_song(self, app):
        seen = []
        app.subscribe(seen.append)
        app.handle_command(msgs.Play(1))
        assert _wait_for(lambda: any(isinstance(m, msgs.SongEnded) for m in seen))
        assert [m.song_index for m in seen if isinstance(m, msgs.SongStarted)] == [1]

    def test_bad_tempo_is_rejected_not_raised(self, app, caplog):
        app.handle_command(msgs.SetTempo(-5.0))
        assert "Rejected SetTempo" in caplog.text

    def test_shutdown_command(self, app):
        app.handle_command(msgs.Shutdown())
        assert app.shutdown_event.is_set()
        assert app.wait(0)

    def test_catalog_changes_are_announced(self, app):
        seen = []
        app.subscribe(seen.append)
        app.catalog.append_dynamic(simple_song("late", 500))
        assert seen == [msgs.SongListUpdated(4)]
        assert app.song_lines()[-1] == "  3* late  [1 tracks, 0s]"

    def test_load_path_reports_failures(self, app, tmp_path):
        assert app.load_path(str(tmp_path / "missing.mid")) == 0
        assert app.load_path(str(tmp_path)) == 0

    def test_describe_when_idle(self, app):
        assert app.describe() == "idle, 3 songs"

    def test_describe_while_playing(self, cfg, clock, sink):
        app = App(cfg, SongCatalog([simple_song("etude", 5000)]), sink, clock=clock)
        seen = []
        clock.call_at(2500, lambda: seen.append(app.describe()))
        try:
            app.start(PlayMode.SINGLE)
            assert _wait_for(lambda: app.wait(0))
        finally:
            app.close()
        assert seen == ["song 0 'etude' playing at 2s"]

    def test_set_track_filter_without_song(self, app):
        app.set_track_filter([1])
        assert app.orchestrator.track_filter == frozenset({1})
        app.set_track_filter(None)
        assert app.orchestrator.track_filter is None


class TestAppOverBus:
    def test_remote_controller_drives_player(self, cfg, sink):
        channel = f"app-{next(_channels)}"
        buses = []
        for _ in range(2):
            t = LocalTransport(channel)
            t.open()
            buses.append(CommandBus(t).start())
        player_bus, remote = buses
        catalog = SongCatalog([simple_song("a", 50), simple_song("b", 50)])
        app = App(cfg, catalog, sink, bus=player_bus)
        statuses = []
        remote.subscribe(statuses.append, STATUSES)
        try:
            remote.publish(msgs.Play(1))
            assert _wait_for(lambda: any(isinstance(m, msgs.SongEnded) for m in statuses))
            ended = [m for m in statuses if isinstance(m, msgs.SongEnded)]
            assert ended == [msgs.SongEnded(1, EndReason.COMPLETED)]
            started = [m for m in statuses if isinstance(m, msgs.SongStarted)]
            assert started[0].title == "b"
        finally:
            app.close()
            remote.close()


class FakeApp:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args):
            self.calls.append((name,) + args)
            return 1 if name == "load_path" else None
        return record

    def song_lines(self):
        return ["  0  a", "  1  b"]


class TestConsole:
    @pytest.fixture
    def console(self):
        out = []
        c = ConsoleControl(FakeApp(), stream=[], out=out.append)
        c.printed = out
        return c

    @pytest.mark.parametrize("line,call", [
        ("s", ("stop",)), ("p", ("toggle_pause",)), ("n", ("next",)), ("b", ("previous",)),
        ("t140", ("set_tempo", 140.0)), ("96.5", ("set_tempo", 96.5)), ("o /tmp/x.mid", ("load_path", "/tmp/x.mid")),
    ])
    def test_commands(self, console, line, call):
        assert console.handle_line(line + "\n") is True
        assert console.app.calls == [call]

    def test_quit(self, console):
        assert console.handle_line("q") is False
        assert console.app.calls == [("shutdown",)]

    @pytest.mark.parametrize("line", ["t0", "t501", "9000"])
    def test_tempo_out_of_range(self, console, line):
        console.handle_line(line)
        assert console.app.calls == []
        assert "1-500" in console.printed[-1]

    def test_bare_t_prompts_for_tempo(self, console):
        console.handle_line("t")
        assert "bpm" in console.printed[-1]
        assert console.app.calls == []
        console.handle_line("132\n")
        assert console.app.calls == [("set_tempo", 132.0)]
        console.handle_line("n")
        assert console.app.calls[-1] == ("next",)

    @pytest.mark.parametrize("answer", ["fast", "900"])
    def test_bad_prompted_tempo(self, console, answer):
        console.handle_line("t")
        console.handle_line(answer)
        assert console.app.calls == []
        console.handle_line("b")
        assert console.app.calls == [("previous",)]

    def test_list_and_unknown(self, console):
        console.handle_line("l")
        console.handle_line("zz")
        console.handle_line("   ")
        assert console.printed[:2] == ["  0  a", "  1  b"]
        assert console.printed[2].startswith("unknown command 'zz'")
        assert len(console.printed) == 3

    def test_reader_thread_stops_on_quit(self):
        app = FakeApp()
        c = ConsoleControl(app, stream=iter(["n\n", "q\n", "n\n"]), out=lambda s: None).start()
        c._thread.join(2.0)
        assert app.calls == [("next",), ("shutdown",)]
