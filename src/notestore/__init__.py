"""
notestore - a local-first note storage layer.
This package persists notes to a single SQLite file, searches them with an FTS5
index or a folded substring scan, orders them with fractional sort keys, and can
encrypt the whole file at rest with SQLCipher using a key kept in the platform
credential store.

This version uses synchronous operations; only key changes may run on a worker thread.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notestore")
except PackageNotFoundError:
    __version__ = "0.3.0"
