# audio/synth.py
import logging
from typing import Optional, Set, Tuple

logger = logging.getLogger(__name__)

CC_ALL_NOTES_OFF = 123


class NoteSink:
    """Where the scheduler sends notes. Implementations may raise; the
    scheduler logs the failure and keeps time."""
    def note_on(self, channel: int, pitch: int, velocity: int):
        raise NotImplementedError

    def note_off(self, channel: int, pitch: int):
        raise NotImplementedError

    def all_notes_off(self, channel: Optional[int] = None):
        raise NotImplementedError

    def program_change(self, channel: int, program: int):
        pass

    def close(self):
        pass


class LogSink(NoteSink):
    """No device: logs events at DEBUG. Used with --no-audio or when no output exists."""
    def __init__(self):
        self.sounding: Set[Tuple[int, int]] = set()

    def note_on(self, channel, pitch, velocity):
        self.sounding.add((channel, pitch))
        logger.debug("on  ch=%d p=%d v=%d", channel, pitch, velocity)

    def note_off(self, channel, pitch):
        self.sounding.discard((channel, pitch))
        logger.debug("off ch=%d p=%d", channel, pitch)

    def all_notes_off(self, channel=None):
        self.sounding = {k for k in self.sounding if channel is not None and k[0] != channel}
        logger.debug("all notes off ch=%s", "all" if channel is None else channel)


class Synth(NoteSink):
    """
    System MIDI output through pygame.midi.
    Channels come from the song; drum channel 9 can be muted with skip_drum_channel.
    """
    DRUM_CH = 9

    def __init__(self, cfg):
        import pygame.midi
        self._midi = pygame.midi
        self.cfg = cfg
        self.midi_out = None
        self.device_id: Optional[int] = None

        pygame.midi.init()
        dev = cfg.device_id if cfg.device_id is not None else pygame.midi.get_default_output_id()
        if dev == -1:
            pygame.midi.quit()
            raise RuntimeError("No MIDI output device found")
        self.midi_out = pygame.midi.Output(dev)
        self.device_id = dev
        logger.info("Using system MIDI out (device %d)", dev)

    def _skip(self, channel: int) -> bool:
        return self.cfg.skip_drum_channel and channel == self.DRUM_CH

    def note_on(self, channel, pitch, velocity):
        if self._skip(channel): return
        v = max(1, min(int(velocity), 127))
        self.midi_out.note_on(int(pitch), v, int(channel))

    def note_off(self, channel, pitch):
        if self._skip(channel): return
        self.midi_out.note_off(int(pitch), 0, int(channel))

    def all_notes_off(self, channel=None):
        chans = range(16) if channel is None else (int(channel),)
        for ch in chans:
            self.midi_out.write_short(0xB0 | ch, CC_ALL_NOTES_OFF, 0)

    def program_change(self, channel, program):
        self.midi_out.set_instrument(int(program), int(channel))

    def close(self):
        if self.midi_out is not None:
            try:
                self.all_notes_off()
                self.midi_out.close()
            except Exception:
                logger.exception("Closing MIDI out failed")
        self.midi_out = None
        self._midi.quit()


def open_sink(cfg) -> NoteSink:
    """pygame.midi output when enabled and available, otherwise a LogSink."""
    if not cfg.enabled:
        return LogSink()
    try:
        return Synth(cfg)
    except Exception as e:
        logger.warning("MIDI init failed (%s); notes will only be logged", e)
        return LogSink()
