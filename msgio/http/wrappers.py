"""Scheme openers for stream-style destinations (``scheme://...``).

A destination containing ``://`` is not a filesystem path: the scheme selects
a registered opener that returns a writable binary file object. ``file://``
is always available and maps to the local path.

An opener may be registered together with a remover. When a copy fails
partway, the remover deletes whatever was written to the destination;
schemes without one leave the partial target behind and log it.
"""

import logging
import os
import threading
from os import PathLike
from typing import BinaryIO, Callable, NamedTuple, Optional, Union
from urllib.parse import unquote, urlsplit
from urllib.request import url2pathname

from msgio.common.constants import DEFAULT_COPY_CHUNK_SIZE, LOCAL_FILE_HOSTS, SCHEME_SEPARATOR
from msgio.common.errors import StreamError
from msgio.common.fileutil import copy_stream

logger = logging.getLogger("msgio.http.wrappers")

Opener = Callable[[str, str], BinaryIO]
Remover = Callable[[str], None]


class _Wrapper(NamedTuple):
    opener: Opener
    remover: Optional[Remover]


def _file_url_path(url: str) -> str:
    """Local path of a ``file://`` URL.

    Raises:
        StreamError: If the URL names a remote host
    """
    parts = urlsplit(url)
    if parts.netloc.lower() not in LOCAL_FILE_HOSTS:
        raise StreamError(f"Unsupported host {parts.netloc!r} in {url}; use file:///path for local files")
    return url2pathname(unquote(parts.path))


def _open_file_url(url: str, mode: str) -> BinaryIO:
    return open(_file_url_path(url), mode)  # type: ignore[return-value]


def _remove_file_url(url: str) -> None:
    try:
        os.remove(_file_url_path(url))
    except FileNotFoundError:
        pass


_wrappers: dict[str, _Wrapper] = {"file": _Wrapper(_open_file_url, _remove_file_url)}
_wrappers_lock = threading.Lock()


def is_stream_target(target: Union[str, "PathLike[str]"]) -> bool:
    """True if *target* names a stream-style destination.

    The scheme separator must be preceded by at least one character.
    """
    if not isinstance(target, str):
        return False
    return target.find(SCHEME_SEPARATOR) > 0


def scheme_of(url: str) -> str:
    return url.split(SCHEME_SEPARATOR, 1)[0].lower()


def register_wrapper(scheme: str, opener: Opener, remover: Optional[Remover] = None) -> None:
    """Register *opener* for ``scheme://`` destinations.

    Args:
        scheme: URL scheme, case-insensitive
        opener: Callable ``(url, mode) -> binary file object``
        remover: Callable ``(url) -> None`` deleting a partly written target
    """
    with _wrappers_lock:
        _wrappers[scheme.lower()] = _Wrapper(opener, remover)
    logger.debug("Registered stream wrapper for %s://", scheme)


def unregister_wrapper(scheme: str) -> None:
    with _wrappers_lock:
        _wrappers.pop(scheme.lower(), None)


def registered_schemes() -> list[str]:
    with _wrappers_lock:
        return sorted(_wrappers)


def _lookup(url: str) -> _Wrapper:
    scheme = scheme_of(url)
    with _wrappers_lock:
        wrapper = _wrappers.get(scheme)
    if wrapper is None:
        raise StreamError(f"No stream wrapper registered for {scheme}://")
    return wrapper


def _open(wrapper: _Wrapper, url: str, mode: str) -> BinaryIO:
    try:
        return wrapper.opener(url, mode)
    except StreamError:
        raise
    except Exception as exc:
        raise StreamError(f"Could not open {url}: {exc}") from exc


def open_target(url: str, mode: str = "wb") -> BinaryIO:
    """Open a stream-style destination.

    Raises:
        StreamError: If no opener is registered for the scheme or it fails
    """
    return _open(_lookup(url), url, mode)


def _discard_target(wrapper: _Wrapper, url: str) -> None:
    if wrapper.remover is None:
        logger.warning("Copy to %s failed; no remover registered, partial target left in place", url)
        return
    try:
        wrapper.remover(url)
    except Exception:
        logger.exception("Could not remove partial target %s", url)


def copy_to_target(source_path: str, url: str, chunk_size: int = DEFAULT_COPY_CHUNK_SIZE) -> int:
    """Copy the file at *source_path* to a stream-style destination.

    A destination opened but not completely written is removed again
    through the scheme's remover.

    Returns:
        Number of bytes copied

    Raises:
        StreamError: If opening either side or copying fails
    """
    wrapper = _lookup(url)
    try:
        src = open(source_path, "rb")
    except OSError as exc:
        raise StreamError(f"Could not open {source_path}: {exc}") from exc

    with src:
        dst = _open(wrapper, url, "wb")
        try:
            with dst:
                return copy_stream(src, dst, chunk_size)
        except Exception as exc:
            _discard_target(wrapper, url)
            raise StreamError(f"Could not copy {source_path} to {url}: {exc}") from exc
