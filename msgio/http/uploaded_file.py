"""Uploaded file descriptor and normalization of raw upload submissions."""

import logging
import os
from collections.abc import Mapping, MutableMapping
from typing import Any, Optional, Union

from msgio.common.constants import DEFAULT_COPY_CHUNK_SIZE, NORMALIZED_FORM_KEY, RAW_UPLOAD_KEYS
from msgio.common.errors import InvalidUploadTargetError, StreamError, UploadedFileError
from msgio.common.fileutil import is_dir_writable
from msgio.common.models import RawUploadEntry, UploadErrorCode
from msgio.http.stream import Stream
from msgio.http.wrappers import copy_to_target, is_stream_target
from msgio.server.config import UploadSettings, get_settings
from msgio.server.sapi import ingest_wsgi_environ, is_multipart_environ, is_uploaded_file, move_uploaded_file

logger = logging.getLogger("msgio.http.upload")

# Normalized tree: field name (or index) -> UploadedFile or nested tree
UploadedFileTree = dict[Union[str, int], Union["UploadedFile", "UploadedFileTree"]]


def _as_mapping(value: Any) -> Optional[Mapping]:
    """View lists as index-keyed mappings; None for scalars."""
    if isinstance(value, Mapping):
        return value
    if isinstance(value, (list, tuple)):
        return dict(enumerate(value))
    return None


class UploadedFile:
    """A file submitted by a client.

    ``name``, ``type`` and ``size`` come from the client and must not be
    trusted. The content is exposed lazily as a :class:`Stream`; the file
    can be moved to its final destination exactly once, after which the
    descriptor is inert.
    """

    def __init__(
        self,
        file: Union[str, "os.PathLike[str]"],
        name: Optional[str] = None,
        type: Optional[str] = None,
        size: Optional[int] = None,
        error: Union[int, UploadErrorCode] = UploadErrorCode.OK,
        sapi: bool = False,
        chunk_size: int = DEFAULT_COPY_CHUNK_SIZE,
    ) -> None:
        """Describe an uploaded file.

        Args:
            file: Path of the file holding the upload
            name: Client-provided file name
            type: Client-provided media type
            size: Client-reported size in bytes
            error: Upload outcome code
            sapi: True if the file was delivered by the host upload pathway
                and must pass the genuine-upload check before moving
            chunk_size: Copy buffer for stream-style destinations
        """
        self.file = os.fspath(file)
        self.name = name
        self.type = type
        self.size = size
        self.error = UploadErrorCode(error)
        self.sapi = sapi
        self.chunk_size = chunk_size

        self._stream: Optional[Stream] = None
        self._moved = False

    @property
    def moved(self) -> bool:
        return self._moved

    def get_stream(self) -> Stream:
        """Stream over the uploaded file, opened on first access.

        Raises:
            UploadedFileError: If the file was moved or cannot be opened
        """
        if self._moved:
            raise UploadedFileError(f"Uploaded file {self.name} has already been moved")

        if self._stream is None:
            try:
                handle = open(self.file, "rb")
            except OSError as exc:
                raise UploadedFileError(f"Could not open uploaded file {self.name} at {self.file}") from exc
            self._stream = Stream(handle)

        return self._stream

    def move_to(self, target_path: Union[str, "os.PathLike[str]"]) -> None:
        """Move the uploaded file to *target_path*.

        A ``scheme://`` target is written through the registered stream
        wrapper and the source removed afterwards. Plain paths are renamed,
        or for host uploads moved once the file is confirmed genuine.

        Raises:
            InvalidUploadTargetError: If the target directory is not writable
            UploadedFileError: If the file was already moved or any step fails
        """
        if self._moved:
            raise UploadedFileError("Uploaded file already moved")

        target = os.fspath(target_path)
        target_is_stream = is_stream_target(target)
        if not target_is_stream and not is_dir_writable(target):
            raise InvalidUploadTargetError(target)

        if target_is_stream:
            try:
                copy_to_target(self.file, target, self.chunk_size)
            except StreamError as exc:
                raise UploadedFileError(f"Error moving uploaded file {self.name} to {target}") from exc
            try:
                os.unlink(self.file)
            except OSError as exc:
                # The copy at the target stays in place
                raise UploadedFileError(f"Error removing uploaded file {self.name}") from exc
        elif self.sapi:
            if not is_uploaded_file(self.file):
                raise UploadedFileError(f"{self.file} is not a valid uploaded file")
            try:
                move_uploaded_file(self.file, target)
            except OSError as exc:
                raise UploadedFileError(f"Error moving uploaded file {self.name} to {target}") from exc
        else:
            try:
                os.rename(self.file, target)
            except OSError as exc:
                raise UploadedFileError(f"Error moving uploaded file {self.name} to {target}") from exc

        self._moved = True
        logger.info("Moved uploaded file %s to %s", self.name, target)

        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def get_error(self) -> UploadErrorCode:
        return self.error

    def get_client_filename(self) -> Optional[str]:
        return self.name

    def get_client_media_type(self) -> Optional[str]:
        return self.type

    def get_size(self) -> Optional[int]:
        return self.size

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(file={self.file!r}, name={self.name!r}, "
            f"error={self.error.name}, sapi={self.sapi}, moved={self._moved})"
        )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @classmethod
    def create_from_environ(
        cls,
        environ: Mapping[str, Any],
        files: Optional[Mapping] = None,
        settings: Optional[UploadSettings] = None,
    ) -> UploadedFileTree:
        """Normalized tree of uploaded files for a request.

        Sources, in order of preference:
          1. An already-normalized tree stored in the environ
          2. A raw host-style submission passed as *files*
          3. The request's own multipart body, ingested into temporary files

        Returns:
            The normalized tree, empty if the request carries no uploads
        """
        settings = settings or get_settings()
        key = settings.normalized_files_key

        normalized = environ.get(key)
        if isinstance(normalized, Mapping):
            return normalized  # type: ignore[return-value]

        if files:
            return cls.parse_uploaded_files(files, chunk_size=settings.copy_chunk_size)

        if is_multipart_environ(environ):
            fields, raw = ingest_wsgi_environ(environ, settings=settings)
            tree = cls.parse_uploaded_files(raw, chunk_size=settings.copy_chunk_size)
            # The body can only be read once
            if isinstance(environ, MutableMapping):
                environ[key] = tree
                environ[NORMALIZED_FORM_KEY] = fields
            return tree

        return {}

    @classmethod
    def parse_uploaded_files(
        cls, uploaded_files: Mapping, chunk_size: int = DEFAULT_COPY_CHUNK_SIZE
    ) -> UploadedFileTree:
        """Parse a raw, host-style tree of uploaded file data.

        A leaf carries ``name``/``type``/``tmp_name``/``error``/``size``.
        When ``error`` is a collection, every key holds parallel per-index
        values; they are regrouped into one record per index and the field
        maps to all of them.

        Args:
            uploaded_files: The non-normalized tree of uploaded file data

        Returns:
            A normalized tree of UploadedFile instances
        """
        parsed: UploadedFileTree = {}
        for field, uploaded_file in uploaded_files.items():
            group = _as_mapping(uploaded_file)
            if group is None:
                continue

            if group.get("error") is None:
                parsed[field] = cls.parse_uploaded_files(group, chunk_size)
                continue

            errors = _as_mapping(group["error"])
            if errors is None:
                entry = RawUploadEntry.model_validate(
                    {k: group[k] for k in RAW_UPLOAD_KEYS if group.get(k) is not None}
                )
                parsed[field] = cls(
                    entry.tmp_name,
                    entry.name,
                    entry.type,
                    entry.size,
                    entry.error,
                    sapi=True,
                    chunk_size=chunk_size,
                )
                continue

            # Move the per-index values up a level and re-parse
            sub_array: dict = {}
            for file_idx, error in errors.items():
                record: dict[str, Any] = {}
                for raw_key in RAW_UPLOAD_KEYS:
                    values = _as_mapping(group.get(raw_key))
                    record[raw_key] = values.get(file_idx) if values is not None else None
                record["error"] = error
                sub_array[file_idx] = record
            parsed[field] = cls.parse_uploaded_files(sub_array, chunk_size)

        return parsed
