"""File and descriptor helpers shared by the stream and upload adapters.

Provides mode-string normalization and FIFO detection for ``os.fstat``
results, plus the directory writability check and chunked copy used when
relocating uploaded files.
"""

import os
import stat
from pathlib import Path
from typing import BinaryIO, Union

from msgio.common.constants import DEFAULT_COPY_CHUNK_SIZE, FSTAT_MODE_S_IFIFO, StreamTypes


def normalize_mode(mode: str) -> str:
    """Drop the binary/text flags from a Python mode string.

    ``"rb+"`` becomes ``"r+"`` and ``"wb"`` becomes ``"w"`` so the result can
    be prefix-matched against the readable/writable allow-lists.
    """
    return mode.replace("b", "").replace("t", "")


def is_fifo_mode(st_mode: int) -> bool:
    """True if the ``st_mode`` bits carry the FIFO flag."""
    return (st_mode & FSTAT_MODE_S_IFIFO) != 0


def stream_type_for(st_mode: int) -> str:
    if stat.S_ISFIFO(st_mode):
        return StreamTypes.PIPE
    if stat.S_ISSOCK(st_mode):
        return StreamTypes.SOCKET
    if stat.S_ISREG(st_mode):
        return StreamTypes.FILE
    return StreamTypes.OTHER


def is_dir_writable(target_path: Union[str, Path]) -> bool:
    """Check that the directory which would contain *target_path* is writable."""
    directory = os.path.dirname(os.fspath(target_path)) or "."
    return os.path.isdir(directory) and os.access(directory, os.W_OK)


def copy_stream(src: BinaryIO, dst: BinaryIO, chunk_size: int = DEFAULT_COPY_CHUNK_SIZE) -> int:
    """Copy *src* into *dst* in ``chunk_size`` blocks.

    Returns:
        Number of bytes copied
    """
    copied = 0
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        dst.write(chunk)
        copied += len(chunk)
    dst.flush()
    return copied
