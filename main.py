# main.py
import sys, os
sys.path.append(os.path.dirname(__file__))  # make config.py etc. importable when run as a script

import argparse
import logging
import traceback
from dataclasses import replace

from utils.crashlog import setup_crashlog, log_exception, log_dir, set_context, set_log_dir
from config import AppConfig, ScanMode, load_config
from app import App
from audio.synth import LogSink, open_sink
from bus import messages as msgs
from bus.bus import open_bus
from catalog.catalog import SongCatalog
from catalog.loader import load_static_songs
from input.console import HELP, ConsoleControl
from playlist.orchestrator import PlayMode, format_duration
from utils.path import songs_dir

logger = logging.getLogger("main")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _init_logging(level: str = "INFO"):
    logs = log_dir()
    log_path = os.path.join(logs, "app.log")

    if logging.getLogger().handlers:
        return

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    try:
        from logging.handlers import RotatingFileHandler
        fh = RotatingFileHandler(log_path, maxBytes=2*1024*1024, backupCount=3, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(fh)
    except OSError as e:
        logging.warning("File logging disabled: %s", e)


def _parse_tracks(text: str):
    if not text or text.strip().lower() == "all":
        return None
    try:
        return frozenset(int(t) for t in text.split(",") if t.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"track list must look like 0,2,3 (got '{text}')")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Timed MIDI playback with local and bus control")
    ap.add_argument('--config', help='JSON config file')
    ap.add_argument('--songs-dir', help='directory of bundled songs')
    ap.add_argument('--load', action='append', default=[], metavar='PATH',
                    help='extra MIDI file or directory (repeatable)')
    ap.add_argument('--mode', default='all', choices=[m.value for m in PlayMode])
    ap.add_argument('--song', type=int, default=0, help='song index to play / start from')
    ap.add_argument('--tracks', type=_parse_tracks, default=None, help='comma separated track indices')
    ap.add_argument('--tempo', type=float, default=None, help='tempo override in bpm')
    ap.add_argument('--scan', choices=['sequential', 'random', 'progressive'], default=None)
    ap.add_argument('--scan-seconds', type=float, default=None)
    ap.add_argument('--growth', choices=['constant', 'linear', 'doubling'], default=None,
                    help='progressive scan growth')
    ap.add_argument('--delay-ms', type=int, default=None)
    ap.add_argument('--loop-playlist', action='store_true')
    ap.add_argument('--loop-song', action='store_true')
    ap.add_argument('--no-bus', action='store_true', help='keep the bus local to this process')
    ap.add_argument('--no-audio', action='store_true', help='log notes instead of playing them')
    ap.add_argument('--list', action='store_true', help='list songs and exit')
    return ap


def apply_args(cfg: AppConfig, args) -> AppConfig:
    loop = cfg.loop
    updates = {}
    if args.loop_playlist:
        updates["loop_playlist"] = True
    if args.loop_song:
        updates["loop_individual"] = True
    if args.delay_ms is not None:
        updates["delay_between_songs_ms"] = max(0, args.delay_ms)
    if args.scan is not None:
        updates["scan_mode"] = ScanMode(args.scan)
    if args.scan_seconds is not None:
        updates["scan_segment_ms"] = int(args.scan_seconds * 1000)
    if args.growth is not None:
        updates["progressive_growth"] = args.growth
    if updates.get("scan_mode", loop.scan_mode) == ScanMode.PROGRESSIVE:
        updates["loop_playlist"] = True   # progressive scan keeps cycling, each pass from the base length
    return replace(
        cfg,
        loop=replace(loop, **updates),
        bus=replace(cfg.bus, enabled=cfg.bus.enabled and not args.no_bus),
        audio=replace(cfg.audio, enabled=cfg.audio.enabled and not args.no_audio),
        catalog=replace(cfg.catalog, songs_dir=args.songs_dir or cfg.catalog.songs_dir),
    )


def _print_status(msg):
    if isinstance(msg, msgs.SongStarted):
        print(f"> [{msg.song_index}] {msg.title} ({format_duration(msg.duration_ms)})")
    elif isinstance(msg, msgs.SongEnded):
        print(f"  [{msg.song_index}] {msg.reason.value}")
    elif isinstance(msg, msgs.Paused):
        print("  paused" if not isinstance(msg, msgs.Resumed) else "  resumed")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg = apply_args(load_config(args.config), args)

    set_log_dir(cfg.log.log_dir)
    setup_crashlog()
    _init_logging(cfg.log.level)
    logger.info("Player starting")

    catalog = SongCatalog(load_static_songs(songs_dir(cfg.catalog.songs_dir)))
    if args.list:
        app = App(cfg, catalog, LogSink())
    else:
        app = App(cfg, catalog, open_sink(cfg.audio), open_bus(cfg.bus))
    set_context(app.describe)
    for path in args.load:
        app.load_path(path)

    if args.list:
        for row in app.song_lines():
            print(row)
        app.close()
        return 0
    if not len(catalog):
        print("No songs found; use --songs-dir or --load")
        app.close()
        return 1

    app.subscribe(_print_status)
    print(HELP)

    app.start(PlayMode(args.mode), cfg.loop, args.song, args.tracks, args.tempo)
    ConsoleControl(app).start()
    try:
        while not app.wait(0.2):
            pass
    except KeyboardInterrupt:
        app.shutdown()
    finally:
        app.close()
        logger.info("Player stopped")
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        try:
            log_exception("Top-level exception", e)
        except OSError:
            pass
        logging.error("Uncaught exception: %s", e, exc_info=True)
        print("Something went wrong, see app.log and error-*.txt in the logs folder")
        traceback.print_exc()
        sys.exit(1)
