"""Utility modules for Taskforge."""

from taskforge.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    list_files,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "file_exists",
    "list_files",
    "read_file",
    "safe_write",
]
