"""
nucleus-orchestrator — durable file replacement

File: src/nucleus_orchestrator/utils/fs.py
Last updated: 2026-10-19

Checkpoint files and exported ledgers are replaced whole: content is staged in
a sibling ``.<name>.*.tmp`` file, flushed to disk and renamed over the target,
so a crash leaves either the old file or the new one.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import BinaryIO

PathLike = str | os.PathLike[str]


@contextmanager
def atomic_writer(path: PathLike) -> Iterator[BinaryIO]:
    """Yield a binary handle whose content replaces ``path`` on clean exit."""

    target = Path(path)
    directory = target.parent
    directory.mkdir(parents=True, exist_ok=True)
    staged = tempfile.NamedTemporaryFile(  # noqa: SIM115 - closed below before the rename
        mode="wb", prefix=f".{target.name}.", suffix=".tmp", dir=directory, delete=False
    )
    staged_path = Path(staged.name)
    committed = False
    try:
        with staged:
            yield staged
            staged.flush()
            os.fsync(staged.fileno())
        os.replace(staged_path, target)
        committed = True
        _sync_directory(directory)
    finally:
        if not committed:
            with suppress(OSError):
                staged_path.unlink()


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> Path:
    with atomic_writer(path) as handle:
        handle.write(data.encode(encoding) if isinstance(data, str) else data)
    return Path(path)


def _sync_directory(directory: Path) -> None:
    # Persists the rename itself; not every platform lets a directory be opened.
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        with suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


__all__ = ["atomic_write", "atomic_writer"]
