"""
Durable file primitives used by the task store and the event log.

Task snapshots are replaced atomically (temp file in the target directory,
fsync, rename) so a crash leaves either the old or the new snapshot. Event
lines are appended and fsynced before the caller returns.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """An OSError from one of the helpers below, with the path attached."""


def ensure_dir(path: str | Path) -> Path:
    """mkdir -p; returns the directory as a Path."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {path}: {e}") from e
    return path


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace `path` with `content` atomically.

    Raises:
        FileSystemError: The temp file could not be written or renamed.
    """
    path = Path(path)
    directory = ensure_dir(path.parent)

    fd, temp_name = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except OSError as e:
        Path(temp_name).unlink(missing_ok=True)
        raise FileSystemError(f"Cannot write {path}: {e}") from e


def append_line_durable(path: str | Path, line: str, encoding: str = "utf-8") -> None:
    """Append `line` plus a newline and fsync. Callers hold the file lock."""
    path = Path(path)
    ensure_dir(path.parent)
    try:
        with open(path, "a", encoding=encoding) as handle:
            handle.write(line.rstrip("\n") + "\n")
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as e:
        raise FileSystemError(f"Cannot append to {path}: {e}") from e


def file_exists(path: str | Path) -> bool:
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    path = Path(path)
    try:
        return path.read_text(encoding=encoding)
    except FileNotFoundError as e:
        raise FileSystemError(f"No such file: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise FileSystemError(f"Cannot read {path}: {e}") from e


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """Sorted regular files in `directory` matching a glob."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileSystemError(f"No such directory: {directory}")
    return sorted(p for p in directory.glob(pattern) if p.is_file())
