import itertools
import threading

import pytest

from bus import messages as msgs
from bus.bus import COMMANDS, STATUSES, CommandBus, open_bus
from bus.transport import LocalTransport, MulticastTransport, open_transport
from config import BusConfig
from errors import TransportUnavailable
from timeline.scheduler import EndReason

_channels = itertools.count()


class TestFrame:
    def test_fixed_size(self):
        assert msgs.FRAME.size == 97
        assert len(msgs.encode(msgs.Stop())) == len(msgs.encode(msgs.SongStarted(3, "x" * 80, 1.0)))

    def test_play_carries_filter_and_tempo(self):
        env = msgs.decode(msgs.encode(msgs.Play(7, frozenset({0, 3}), 90.0), sender=11, seq=4, timestamp_ms=5))
        assert env.message == msgs.Play(7, frozenset({0, 3}), 90.0)
        assert (env.sender, env.seq, env.timestamp_ms) == (11, 4, 5)

    def test_play_defaults_mean_all_tracks_and_song_tempo(self):
        assert msgs.decode(msgs.encode(msgs.Play(1))).message == msgs.Play(1, None, None)

    def test_song_ended_reason(self):
        env = msgs.decode(msgs.encode(msgs.SongEnded(2, EndReason.SKIPPED)))
        assert env.message.reason == EndReason.SKIPPED

    def test_long_title_truncated_on_char_boundary(self):
        env = msgs.decode(msgs.encode(msgs.SongStarted(0, "é" * 30, 1000.0)))
        assert env.message.title == "é" * 24

    def test_resumed_is_not_paused(self):
        assert type(msgs.decode(msgs.encode(msgs.Resumed(1))).message) is msgs.Resumed

    @pytest.mark.parametrize("frame", [b"", b"MP" + bytes(95), b"XX" + bytes(msgs.FRAME.size - 2)])
    def test_bad_frames(self, frame):
        with pytest.raises(ValueError):
            msgs.decode(frame)

    def test_unknown_tag(self):
        raw = bytearray(msgs.encode(msgs.Stop()))
        raw[3] = 200
        with pytest.raises(ValueError):
            msgs.decode(bytes(raw))

    def test_track_mask(self):
        assert msgs.mask_to_tracks(msgs.tracks_to_mask(frozenset({0, 63}))) == frozenset({0, 63})
        assert msgs.tracks_to_mask(None) == 0


@pytest.fixture
def pair():
    channel = f"test-{next(_channels)}"
    buses = []
    for _ in range(2):
        t = LocalTransport(channel)
        t.open()
        buses.append(CommandBus(t).start())
    yield buses
    for b in buses:
        b.close()


class TestCommandBus:
    def test_commands_cross_between_buses(self, pair):
        a, b = pair
        got = []
        b.subscribe(got.append, COMMANDS)
        a.publish(msgs.Pause())
        a.publish(msgs.SongProgress(0, 1.0, 2.0))
        assert b.flush()
        assert got == [msgs.Pause()]

    def test_local_subscribers_see_own_messages(self, pair):
        a, _ = pair
        got = []
        a.subscribe(got.append, STATUSES)
        a.publish(msgs.TempoChanged(100.0))
        assert a.flush()
        assert got == [msgs.TempoChanged(100.0)]

    def test_fifo_per_producer(self, pair):
        a, b = pair
        got = []
        b.subscribe(lambda m: got.append(m.elapsed_ms), STATUSES)
        for i in range(50):
            a.publish(msgs.SongProgress(0, float(i), 50.0))
        assert b.flush()
        assert got == [float(i) for i in range(50)]

    def test_own_echo_and_stale_frames_dropped(self, pair):
        _, b = pair
        got = []
        b.subscribe(got.append)
        b._on_frame(msgs.encode(msgs.Stop(), sender=b.sender_id, seq=1))
        b._on_frame(msgs.encode(msgs.Next(), sender=5, seq=2))
        b._on_frame(msgs.encode(msgs.Previous(), sender=5, seq=1))
        assert b.flush()
        assert got == [msgs.Next()]
        assert b.dropped == 1

    def test_handler_failure_does_not_stop_dispatch(self, pair):
        a, _ = pair
        got = []
        a.subscribe(lambda m: 1 / 0)
        a.subscribe(got.append)
        a.publish(msgs.Stop())
        a.publish(msgs.Resume())
        assert a.flush()
        assert got == [msgs.Stop(), msgs.Resume()]

    def test_unsubscribe(self, pair):
        a, _ = pair
        got = []
        unsubscribe = a.subscribe(got.append)
        unsubscribe()
        a.publish(msgs.Stop())
        assert a.flush()
        assert got == []

    def test_concurrent_publishers(self, pair):
        a, b = pair
        got = []
        b.subscribe(got.append, STATUSES)

        def burst():
            for i in range(100):
                a.publish(msgs.SongProgress(0, float(i), 100.0))

        threads = [threading.Thread(target=burst) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert b.flush()
        assert len(got) == 400
        assert b.dropped == 0

    def test_heartbeat(self):
        t = LocalTransport(f"test-{next(_channels)}")
        t.open()
        bus = CommandBus(t, heartbeat_interval_s=0.01).start()
        beats = []
        seen = threading.Event()
        bus.subscribe(lambda m: (beats.append(m), seen.set()) if isinstance(m, msgs.Heartbeat) else None)
        try:
            assert seen.wait(2.0)
        finally:
            bus.close()
        assert beats[0].timestamp_ms > 0


class TestTransportFallback:
    def test_disabled_bus_is_local(self):
        t = open_transport(BusConfig(enabled=False, channel=f"test-{next(_channels)}"), msgs.FRAME.size)
        try:
            assert isinstance(t, LocalTransport)
            assert not t.cross_process
        finally:
            t.close()

    def test_unavailable_multicast_falls_back(self, monkeypatch):
        def fail(self):
            raise TransportUnavailable("no multicast here")

        monkeypatch.setattr(MulticastTransport, "open", fail)
        bus = open_bus(BusConfig(channel=f"test-{next(_channels)}", heartbeat_interval_s=0))
        try:
            assert not bus.cross_process
            got = []
            bus.subscribe(got.append)
            bus.publish(msgs.Shutdown())
            assert bus.flush()
            assert got == [msgs.Shutdown()]
        finally:
            bus.close()
