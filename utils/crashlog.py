# utils/crashlog.py
import os, sys, faulthandler, datetime, itertools, traceback, threading
from typing import Callable, Optional

_fault_file = None
_log_dir: Optional[str] = None
_context: Optional[Callable[[], str]] = None
_serial = itertools.count()


def set_log_dir(path: Optional[str]):
    """Where crash/error files and app.log go. None -> ./logs"""
    global _log_dir
    _log_dir = path


def set_context(fn: Optional[Callable[[], str]]):
    """Register a callable describing player state; its text heads every crash file."""
    global _context
    _context = fn


def log_dir() -> str:
    d = _log_dir or os.path.join(os.getcwd(), "logs")
    os.makedirs(d, exist_ok=True)
    return d


def _new_log_path(prefix: str = "crash") -> str:
    stamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S-%f")
    return os.path.join(log_dir(), f"{prefix}-{stamp}-{next(_serial)}.txt")


def _describe() -> str:
    if _context is None:
        return ""
    try:
        return f"player: {_context()}\n"
    except Exception as e:
        return f"player: <unavailable: {e!r}>\n"


def _write_report(prefix: str, heading: str, exc_type, exc, tb) -> str:
    path = _new_log_path(prefix)
    with open(path, "w", encoding="utf-8") as out:
        out.write(heading + "\n")
        out.write(_describe())
        out.write("=" * 60 + "\n")
        traceback.print_exception(exc_type, exc, tb, file=out)
    return path


def setup_crashlog():
    global _fault_file
    try:
        if _fault_file is None:
            _fault_file = open(_new_log_path("native"), "w", encoding="utf-8")
        faulthandler.enable(_fault_file, all_threads=True)
    except OSError:
        _fault_file = None

    def _hook(exc_type, exc, tb):
        try:
            _write_report("crash", "UNCAUGHT EXCEPTION", exc_type, exc, tb)
        finally:
            sys.__excepthook__(exc_type, exc, tb)
    sys.excepthook = _hook

    def _thread_hook(args):
        if args.exc_type is SystemExit:
            return
        name = args.thread.name if args.thread is not None else "?"
        try:
            _write_report("crash", f"UNCAUGHT EXCEPTION in thread {name}",
                          args.exc_type, args.exc_value, args.exc_traceback)
        finally:
            sys.__excepthook__(args.exc_type, args.exc_value, args.exc_traceback)
    threading.excepthook = _thread_hook


def log_exception(title: str, exc: BaseException) -> str:
    return _write_report("error", f"[{title}] {type(exc).__name__}: {exc}",
                         type(exc), exc, exc.__traceback__)
