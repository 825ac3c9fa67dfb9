"""Stream adapter over an OS-level file handle."""

import logging
import os
from typing import IO, Any, Optional, Union

from msgio.common.constants import READABLE_MODES, WRITABLE_MODES, MetaKeys
from msgio.common.errors import InvalidStreamError, StreamError
from msgio.common.fileutil import is_fifo_mode, normalize_mode, stream_type_for
from msgio.common.models import StreamMetadata

logger = logging.getLogger("msgio.http.stream")


def is_os_handle(handle: Any) -> bool:
    """True if *handle* is an open file object backed by a real descriptor."""
    fileno = getattr(handle, "fileno", None)
    if not callable(fileno) or getattr(handle, "closed", False):
        return False
    try:
        return isinstance(fileno(), int)
    except (OSError, ValueError):
        # io.UnsupportedOperation for in-memory buffers
        return False


class Stream:
    """Stream wrapper around one OS stream handle.

    The adapter owns the attached handle exclusively. Readability,
    writability, seekability, size and pipe detection are derived from the
    handle lazily and cached until the handle changes (attach/detach) or, for
    the size, until the next write.

    Every operation raises :class:`StreamError` when the handle cannot
    satisfy it, except stringification which yields an empty result.
    """

    def __init__(self, stream: IO[Any]) -> None:
        """Wrap *stream*.

        Args:
            stream: Open file object with a valid ``fileno()``

        Raises:
            InvalidStreamError: If *stream* is not an OS stream handle
        """
        self._stream: Optional[IO[Any]] = None
        self._reset_cache()
        self.attach(stream)

    def _reset_cache(self) -> None:
        self._meta: Optional[dict[str, Any]] = None
        self._readable: Optional[bool] = None
        self._writable: Optional[bool] = None
        self._seekable: Optional[bool] = None
        self._size: Optional[int] = None
        self._is_pipe: Optional[bool] = None
        self._eof = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_attached(self) -> bool:
        """Is an open handle attached to this stream?"""
        return self._stream is not None and not getattr(self._stream, "closed", False)

    def _handle(self) -> IO[Any]:
        if self._stream is None:
            raise StreamError("No stream handle attached")
        return self._stream

    def attach(self, stream: IO[Any]) -> None:
        """Attach a new handle, releasing (not closing) the previous one.

        Raises:
            InvalidStreamError: If *stream* is not an OS stream handle
        """
        if not is_os_handle(stream):
            raise InvalidStreamError(f"{type(self).__name__}.attach argument must be a valid OS stream handle")

        if self.is_attached():
            self.detach()

        self._stream = stream
        self._reset_cache()
        logger.debug("Attached fd %d", stream.fileno())

    def detach(self) -> Optional[IO[Any]]:
        """Separate the underlying handle from the stream without closing it.

        Returns:
            The previously attached handle, or None
        """
        old_stream = self._stream
        self._stream = None
        self._reset_cache()
        return old_stream

    def close(self) -> None:
        """Close the attached handle and detach it. No-op when detached."""
        try:
            if self.is_attached():
                if self.is_pipe():
                    self._close_pipe()
                else:
                    self._close_file()
        except OSError as exc:
            raise StreamError(f"Could not close stream: {exc}") from exc
        finally:
            self.detach()

    def _close_pipe(self) -> None:
        stream = self._handle()
        # os.popen() wrappers report the child's exit status on close
        status = stream.close()
        if status is not None:
            logger.debug("Pipe closed with exit status %s", status)

    def _close_file(self) -> None:
        self._handle().close()

    def __enter__(self) -> "Stream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _fstat(self) -> os.stat_result:
        stream = self._handle()
        try:
            return os.fstat(stream.fileno())
        except (OSError, ValueError) as exc:
            raise StreamError(f"Could not stat stream: {exc}") from exc

    def get_metadata(self, key: Optional[str] = None) -> Any:
        """Read the handle's metadata.

        The mapping is refreshed from the handle on every call.

        Args:
            key: Single metadata key to return

        Returns:
            The whole mapping when *key* is None, else the value for *key*
            or None if it is absent
        """
        if not self.is_attached():
            raise StreamError("Could not get metadata of a detached stream")
        stream = self._handle()

        st = self._fstat()
        fd = stream.fileno()
        mode = getattr(stream, "mode", None)
        if not isinstance(mode, str):
            mode = getattr(getattr(stream, "buffer", None), "mode", "")
        name = getattr(stream, "name", None)
        try:
            seekable = bool(stream.seekable())
        except (OSError, ValueError):
            seekable = False

        self._meta = StreamMetadata(
            mode=mode,
            seekable=seekable,
            uri=name if isinstance(name, str) else None,
            blocked=os.get_blocking(fd),
            stream_type=stream_type_for(st.st_mode),
            fileno=fd,
            eof=self._eof,
        ).model_dump()

        if key is None:
            return self._meta
        return self._meta.get(key)

    def is_pipe(self) -> bool:
        """Whether the attached handle is a pipe/FIFO."""
        if self._is_pipe is None:
            self._is_pipe = False
            if self.is_attached():
                self._is_pipe = is_fifo_mode(self._fstat().st_mode)

        return self._is_pipe

    def get_size(self) -> Optional[int]:
        """Size of the stream in bytes, or None if it is unknown.

        Pipes have no meaningful size. A zero-length file is reported as 0
        and cached like any other size.
        """
        if self._size is None and self.is_attached():
            if self.is_pipe():
                return None
            if self.is_writable():
                self._flush()
            self._size = self._fstat().st_size

        return self._size

    def _flush(self) -> None:
        stream = self._handle()
        try:
            stream.flush()
        except (OSError, ValueError) as exc:
            raise StreamError(f"Could not flush stream: {exc}") from exc

    def is_readable(self) -> bool:
        if self._readable is None:
            if self.is_pipe():
                self._readable = True
            else:
                self._readable = False
                if self.is_attached():
                    mode = normalize_mode(self.get_metadata(MetaKeys.MODE))
                    self._readable = any(mode.startswith(m) for m in READABLE_MODES)

        return self._readable

    def is_writable(self) -> bool:
        if self._writable is None:
            self._writable = False
            if self.is_attached():
                mode = normalize_mode(self.get_metadata(MetaKeys.MODE))
                self._writable = any(mode.startswith(m) for m in WRITABLE_MODES)

        return self._writable

    def is_seekable(self) -> bool:
        if self._seekable is None:
            self._seekable = False
            if self.is_attached():
                self._seekable = not self.is_pipe() and bool(self.get_metadata(MetaKeys.SEEKABLE))

        return self._seekable

    # ------------------------------------------------------------------
    # Positioning
    # ------------------------------------------------------------------

    def tell(self) -> int:
        """Current position of the read/write pointer.

        Raises:
            StreamError: If detached, a pipe, or the position query fails
        """
        if not self.is_attached() or self.is_pipe():
            raise StreamError("Could not get the position of the pointer in stream")
        stream = self._handle()

        try:
            return stream.tell()
        except (OSError, ValueError) as exc:
            raise StreamError("Could not get the position of the pointer in stream") from exc

    def eof(self) -> bool:
        """End-of-stream indicator; always True when detached.

        Set once a read comes back short or the remaining contents were
        consumed, cleared again by seek/rewind.
        """
        return self._eof if self.is_attached() else True

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> None:
        """Move the pointer. Seeking to position 0 is a successful seek."""
        if not self.is_seekable():
            raise StreamError("Could not seek in stream")
        stream = self._handle()

        try:
            stream.seek(offset, whence)
        except (OSError, ValueError) as exc:
            raise StreamError("Could not seek in stream") from exc
        self._eof = False

    def rewind(self) -> None:
        if not self.is_seekable():
            raise StreamError("Could not rewind stream")
        stream = self._handle()

        try:
            stream.seek(0)
        except (OSError, ValueError) as exc:
            raise StreamError("Could not rewind stream") from exc
        self._eof = False

    # ------------------------------------------------------------------
    # Reading and writing
    # ------------------------------------------------------------------

    def read(self, length: int) -> Union[bytes, str]:
        """Read up to *length* bytes.

        An empty result at end of stream is a valid read. A non-blocking
        handle with no data available returns None, which is a failure.
        """
        if not self.is_readable():
            raise StreamError("Could not read from stream")
        stream = self._handle()

        try:
            data = stream.read(length)
        except (OSError, ValueError) as exc:
            raise StreamError("Could not read from stream") from exc
        if data is None:
            raise StreamError("Could not read from stream")

        if len(data) < length:
            self._eof = True
        return data

    def write(self, data: Union[bytes, str]) -> int:
        """Write *data* and return the number of bytes written."""
        if not self.is_writable():
            raise StreamError("Could not write to stream")
        stream = self._handle()

        try:
            written = stream.write(data)
        except (OSError, ValueError) as exc:
            raise StreamError("Could not write to stream") from exc
        if written is None:
            raise StreamError("Could not write to stream")

        # recalculated on next get_size()
        self._size = None

        return written

    def get_contents(self) -> Union[bytes, str]:
        """Read everything from the current position to the end."""
        if not self.is_readable():
            raise StreamError("Could not get contents of stream")
        stream = self._handle()

        try:
            contents = stream.read()
        except (OSError, ValueError) as exc:
            raise StreamError("Could not get contents of stream") from exc
        if contents is None:
            raise StreamError("Could not get contents of stream")

        self._eof = True
        return contents

    # ------------------------------------------------------------------
    # Stringification
    # ------------------------------------------------------------------

    def _all_contents(self) -> Union[bytes, str]:
        if not self.is_attached():
            return b""

        try:
            self.rewind()
            return self.get_contents()
        except StreamError:
            logger.debug("Stream could not be read whole, stringified as empty", exc_info=True)
            return b""

    def __str__(self) -> str:
        contents = self._all_contents()
        if isinstance(contents, bytes):
            return contents.decode("utf-8", "surrogateescape")
        return contents

    def __bytes__(self) -> bytes:
        contents = self._all_contents()
        if isinstance(contents, str):
            return contents.encode("utf-8", "surrogateescape")
        return contents

    def __repr__(self) -> str:
        fd = self._stream.fileno() if self.is_attached() and self._stream is not None else None
        return f"{type(self).__name__}(fd={fd!r})"
