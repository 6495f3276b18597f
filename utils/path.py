# utils/path.py
import sys, os


def resource_path(rel: str) -> str:
    """
    Path relative to the project root while developing;
    inside the PyInstaller unpack dir once frozen.
    Usage: resource_path("songs")
    """
    base = getattr(sys, "_MEIPASS", os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
    return os.path.join(base, rel)


def songs_dir(configured):
    """Absolute paths are kept; relative ones resolve against the working dir, then the bundle."""
    if not configured:
        return None
    if os.path.isabs(configured) or os.path.isdir(configured):
        return configured
    return resource_path(configured)
