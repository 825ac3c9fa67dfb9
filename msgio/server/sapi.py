"""Host upload pathway: multipart ingestion and the genuine-upload registry.

``multipart/form-data`` bodies are parsed with python-multipart. Every file
part is written to a temporary file under ``upload_tmp_dir`` and the path is
recorded in an :class:`UploadRegistry`. Only registered paths pass the
anti-tampering check that SAPI-mode uploaded files perform before moving.
Uploads still unmoved when a request ends are removed per request with
:func:`cleanup_request` or the :func:`request_uploads` context manager.

The result mirrors the host's raw submission format consumed by
:meth:`msgio.http.uploaded_file.UploadedFile.parse_uploaded_files`::

    {"avatar": {"name": "me.png", "type": "image/png", "tmp_name": "/tmp/msgioab12",
                "error": 0, "size": 1234},
     "photos": {"name": {0: "a.jpg", 1: "b.jpg"}, "type": {...}, "tmp_name": {...},
                "error": {...}, "size": {...}}}
"""

import errno
import logging
import os
import re
import shutil
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterable, Iterator, Mapping, MutableMapping, Optional, Union

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from msgio.common.constants import MAX_FILE_SIZE_FIELD, RAW_UPLOAD_KEYS, UPLOAD_TMP_NAMES_KEY, UPLOAD_TMP_PREFIX
from msgio.common.errors import StreamError
from msgio.common.models import UploadErrorCode
from msgio.server.config import UploadSettings, get_settings

logger = logging.getLogger("msgio.server.sapi")

_FIELD_NAME_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])*)$")
_FIELD_KEY_RE = re.compile(r"\[([^\[\]]*)\]")


class UploadRegistry:
    """Paths of temporary files created by upload ingestion.

    Thread-safe: WSGI servers may ingest requests on several threads.
    """

    def __init__(self) -> None:
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(path: Union[str, "os.PathLike[str]"]) -> str:
        return os.path.realpath(os.fspath(path))

    def register(self, path: Union[str, "os.PathLike[str]"]) -> None:
        with self._lock:
            self._paths.add(self._key(path))

    def is_uploaded_file(self, path: Union[str, "os.PathLike[str]"]) -> bool:
        """True if *path* was created by upload ingestion and not yet moved."""
        with self._lock:
            return self._key(path) in self._paths

    def move_uploaded_file(self, src: Union[str, "os.PathLike[str]"], dst: Union[str, "os.PathLike[str]"]) -> None:
        """Move a genuine upload to *dst*.

        Raises:
            PermissionError: If *src* is not a registered upload
            OSError: If the move itself fails
        """
        if not self.is_uploaded_file(src):
            raise PermissionError(errno.EPERM, "Not an uploaded file", os.fspath(src))

        key = self._key(src)
        shutil.move(key, os.fspath(dst))
        with self._lock:
            self._paths.discard(key)
        logger.debug("Moved uploaded file %s to %s", key, dst)

    def cleanup(self, paths: Optional[Iterable[Union[str, "os.PathLike[str]"]]] = None) -> int:
        """Delete registered files that were never moved.

        Files no longer registered (moved, or never ingested) are left alone,
        so one request's cleanup cannot touch another request's uploads.

        Args:
            paths: Files to clean up, normally the uploads of a single
                request (None = every registered file, for shutdown)

        Returns:
            Number of files removed
        """
        with self._lock:
            if paths is None:
                targets = list(self._paths)
                self._paths.clear()
            else:
                targets = [key for key in {self._key(p) for p in paths} if key in self._paths]
                self._paths.difference_update(targets)

        removed = 0
        for path in targets:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logger.debug("Removed %d unmoved uploaded file(s)", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


upload_registry = UploadRegistry()


def is_uploaded_file(path: Union[str, "os.PathLike[str]"]) -> bool:
    return upload_registry.is_uploaded_file(path)


def move_uploaded_file(src: Union[str, "os.PathLike[str]"], dst: Union[str, "os.PathLike[str]"]) -> None:
    upload_registry.move_uploaded_file(src, dst)


# ----------------------------------------------------------------------
# Raw submission structure
# ----------------------------------------------------------------------


def split_field_name(field_name: str) -> tuple[str, list[Optional[str]]]:
    """Split ``docs[a][]`` into ``("docs", ["a", None])``.

    Empty brackets become None (append). Names that are not well formed
    are used as-is with no nesting.
    """
    match = _FIELD_NAME_RE.match(field_name)
    if not match:
        return field_name, []
    keys: list[Optional[str]] = [k if k != "" else None for k in _FIELD_KEY_RE.findall(match.group(2))]
    return match.group(1), keys


def _next_index(node: dict) -> int:
    ints = [k for k in node if isinstance(k, int)]
    return max(ints) + 1 if ints else 0


def _index_key(key: str) -> Union[int, str]:
    return int(key) if key.isdigit() else key


def add_raw_upload(files: dict, field_name: str, entry: dict[str, Any]) -> None:
    """Place one file *entry* into the raw *files* tree under *field_name*.

    Nested names spread each of ``name``/``type``/``tmp_name``/``error``/
    ``size`` into parallel index-keyed mappings under the base field.
    """
    base, keys = split_field_name(field_name)
    if not keys:
        files[base] = dict(entry)
        return

    group = files.get(base)
    if not isinstance(group, dict) or not isinstance(group.get("error"), dict):
        group = {k: {} for k in RAW_UPLOAD_KEYS}
        files[base] = group

    # Resolve appends against one tree so all five stay aligned
    path: list[Union[int, str]] = []
    node = group["error"]
    for key in keys:
        resolved = _next_index(node) if key is None else _index_key(key)
        path.append(resolved)
        child = node.get(resolved)
        node = child if isinstance(child, dict) else {}

    for raw_key in RAW_UPLOAD_KEYS:
        node = group[raw_key]
        for resolved in path[:-1]:
            child = node.get(resolved)
            if not isinstance(child, dict):
                child = {}
                node[resolved] = child
            node = child
        node[path[-1]] = entry.get(raw_key)


def uploaded_tmp_names(files: Mapping) -> list[str]:
    """Temporary paths of every successfully received file in a raw tree."""
    names: list[str] = []

    def collect(error: Any, tmp_name: Any) -> None:
        if isinstance(error, Mapping):
            for index, code in error.items():
                collect(code, tmp_name.get(index) if isinstance(tmp_name, Mapping) else None)
        elif error == UploadErrorCode.OK and tmp_name:
            names.append(tmp_name)

    for value in files.values():
        if isinstance(value, Mapping) and "error" in value:
            collect(value["error"], value.get("tmp_name"))
    return names


# ----------------------------------------------------------------------
# Multipart ingestion
# ----------------------------------------------------------------------


class _FilePart:
    def __init__(self, field_name: str, filename: str, content_type: str) -> None:
        self.field_name = field_name
        self.filename = filename
        self.content_type = content_type
        self.size = 0
        self.error = UploadErrorCode.OK
        self.fileobj: Optional[BinaryIO] = None
        self.tmp_name = ""

    def discard(self) -> None:
        if self.fileobj is not None:
            self.fileobj.close()
            self.fileobj = None
        if self.tmp_name:
            try:
                os.remove(self.tmp_name)
            except FileNotFoundError:
                pass
            self.tmp_name = ""

    def entry(self) -> dict[str, Any]:
        ok = self.error is UploadErrorCode.OK
        return {
            "name": self.filename,
            "type": self.content_type if ok else "",
            "tmp_name": self.tmp_name if ok else "",
            "error": int(self.error),
            "size": self.size if ok else 0,
        }


class MultipartIngest:
    """Callback target for :class:`MultipartParser` building a raw submission."""

    def __init__(self, settings: UploadSettings, registry: UploadRegistry) -> None:
        self.settings = settings
        self.registry = registry
        self.fields: dict[str, str] = {}
        self.files: dict = {}
        self.file_count = 0
        self.max_form_size: Optional[int] = None

        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._field_name: Optional[str] = None
        self._field_data: list[bytes] = []
        self._file: Optional[_FilePart] = None
        self._skip = False

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }

    def on_part_begin(self) -> None:
        self._headers = {}
        self._field_name = None
        self._field_data = []
        self._file = None
        self._skip = False

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        field_name = options.get(b"name", b"").decode("utf-8", "replace")

        if b"filename" not in options:
            self._field_name = field_name
            return

        if self.file_count >= self.settings.max_file_uploads:
            logger.warning(
                "Maximum number of allowable file uploads (%d) exceeded, ignoring %r",
                self.settings.max_file_uploads,
                field_name,
            )
            self._skip = True
            return
        self.file_count += 1

        filename = os.path.basename(options[b"filename"].decode("utf-8", "replace").replace("\\", "/"))
        content_type = self._headers.get(b"content-type", b"").decode("latin-1")
        part = _FilePart(field_name, filename, content_type)
        self._file = part

        if not filename:
            part.error = UploadErrorCode.NO_FILE
            return

        tmp_dir = self.settings.upload_tmp_dir
        if not tmp_dir.is_dir():
            logger.error("Upload temporary directory %s does not exist", tmp_dir)
            part.error = UploadErrorCode.NO_TMP_DIR
            return

        try:
            fileobj = tempfile.NamedTemporaryFile(prefix=UPLOAD_TMP_PREFIX, dir=tmp_dir, delete=False)
        except OSError:
            logger.exception("Could not create temporary file in %s", tmp_dir)
            part.error = UploadErrorCode.CANT_WRITE
            return
        part.fileobj = fileobj  # type: ignore[assignment]
        part.tmp_name = fileobj.name

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._skip:
            return

        if self._file is None:
            self._field_data.append(data[start:end])
            return

        part = self._file
        if part.error is not UploadErrorCode.OK or part.fileobj is None:
            return

        part.size += end - start
        if part.size > self.settings.upload_max_filesize:
            logger.warning("Uploaded file %r exceeds upload_max_filesize", part.filename)
            part.error = UploadErrorCode.INI_SIZE
            part.discard()
            return
        if self.max_form_size is not None and part.size > self.max_form_size:
            logger.warning("Uploaded file %r exceeds %s", part.filename, MAX_FILE_SIZE_FIELD)
            part.error = UploadErrorCode.FORM_SIZE
            part.discard()
            return

        try:
            part.fileobj.write(data[start:end])
        except OSError:
            logger.exception("Could not write uploaded file %r", part.filename)
            part.error = UploadErrorCode.CANT_WRITE
            part.discard()

    def on_part_end(self) -> None:
        if self._skip:
            return

        if self._file is None:
            if self._field_name is None:
                return
            value = b"".join(self._field_data).decode("utf-8", "replace")
            self.fields[self._field_name] = value
            if self._field_name == MAX_FILE_SIZE_FIELD:
                try:
                    self.max_form_size = int(value)
                except ValueError:
                    logger.debug("Ignoring non-numeric %s=%r", MAX_FILE_SIZE_FIELD, value)
            return

        self._finish_file(self._file)
        self._file = None

    def _finish_file(self, part: _FilePart) -> None:
        if part.fileobj is not None:
            part.fileobj.close()
            part.fileobj = None
        if part.error is UploadErrorCode.OK:
            self.registry.register(part.tmp_name)
        add_raw_upload(self.files, part.field_name, part.entry())

    def finish(self) -> None:
        """Account for a file part cut off by the end of the body."""
        if self._file is not None and not self._skip:
            part = self._file
            logger.warning("Uploaded file %r was only partially received", part.filename)
            part.discard()
            if part.error is UploadErrorCode.OK:
                part.error = UploadErrorCode.PARTIAL
            self._finish_file(part)
            self._file = None


def _iter_body(body: Union[bytes, BinaryIO], chunk_size: int, limit: Optional[int]) -> Iterator[bytes]:
    if isinstance(body, (bytes, bytearray)):
        yield bytes(body if limit is None else body[:limit])
        return

    remaining = limit
    while remaining is None or remaining > 0:
        size = chunk_size if remaining is None else min(chunk_size, remaining)
        chunk = body.read(size)
        if not chunk:
            break
        if remaining is not None:
            remaining -= len(chunk)
        yield chunk


def ingest_multipart(
    content_type: Union[str, bytes],
    body: Union[bytes, BinaryIO],
    content_length: Optional[int] = None,
    settings: Optional[UploadSettings] = None,
    registry: Optional[UploadRegistry] = None,
) -> tuple[dict[str, str], dict]:
    """Parse a ``multipart/form-data`` body into form fields and raw uploads.

    Args:
        content_type: Request Content-Type including the boundary
        body: Request body bytes or a readable binary stream
        content_length: Bytes to read from *body* (None = until exhausted)
        settings: Upload settings (None = process-wide settings)
        registry: Registry recording genuine uploads

    Returns:
        Tuple of (form fields, raw uploaded file tree)

    Raises:
        StreamError: If the body is not valid multipart data
    """
    settings = settings or get_settings()
    if registry is None:
        registry = upload_registry

    mime, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if mime != b"multipart/form-data" or not boundary:
        raise StreamError(f"Not a multipart/form-data body: {content_type!r}")

    ingest = MultipartIngest(settings, registry)
    parser = MultipartParser(boundary, ingest.callbacks())
    try:
        for chunk in _iter_body(body, settings.copy_chunk_size, content_length):
            parser.write(chunk)
        parser.finalize()
    except MultipartParseError as exc:
        ingest.finish()
        # The caller never sees these files
        removed = registry.cleanup(uploaded_tmp_names(ingest.files))
        logger.warning("Malformed multipart body, removed %d received file(s)", removed)
        raise StreamError(f"Malformed multipart body: {exc}") from exc
    ingest.finish()

    logger.debug("Ingested %d field(s) and %d file(s)", len(ingest.fields), ingest.file_count)
    return ingest.fields, ingest.files


def is_multipart_environ(environ: Mapping[str, Any]) -> bool:
    content_type = environ.get("CONTENT_TYPE", "")
    return content_type.startswith("multipart/form-data") and "wsgi.input" in environ


def ingest_wsgi_environ(
    environ: Mapping[str, Any],
    settings: Optional[UploadSettings] = None,
    registry: Optional[UploadRegistry] = None,
) -> tuple[dict[str, str], dict]:
    """Ingest the multipart body of a WSGI request.

    The temporary files registered for this request are listed in the
    environ so :func:`cleanup_request` can remove exactly those.

    Returns empty results when the request carries no multipart body.
    """
    if not is_multipart_environ(environ):
        return {}, {}

    length = environ.get("CONTENT_LENGTH") or ""
    content_length = int(length) if length.strip().isdigit() else None
    fields, files = ingest_multipart(
        environ["CONTENT_TYPE"],
        environ["wsgi.input"],
        content_length=content_length,
        settings=settings,
        registry=registry,
    )
    if isinstance(environ, MutableMapping):
        environ.setdefault(UPLOAD_TMP_NAMES_KEY, []).extend(uploaded_tmp_names(files))
    return fields, files


def cleanup_request(environ: MutableMapping[str, Any], registry: Optional[UploadRegistry] = None) -> int:
    """Delete the unmoved uploads ingested for one request.

    Returns:
        Number of files removed
    """
    if registry is None:
        registry = upload_registry
    tmp_names = environ.pop(UPLOAD_TMP_NAMES_KEY, None)
    if not tmp_names:
        return 0
    return registry.cleanup(tmp_names)


@contextmanager
def request_uploads(
    environ: MutableMapping[str, Any], registry: Optional[UploadRegistry] = None
) -> Iterator[MutableMapping[str, Any]]:
    """Scope a request's uploads: files not moved by the end are deleted.

    Usage::

        with request_uploads(environ):
            files = UploadedFile.create_from_environ(environ)
            files["avatar"].move_to("/srv/avatars/me.png")
    """
    try:
        yield environ
    finally:
        cleanup_request(environ, registry)
