#!/usr/bin/env python3
"""
Unit tests for UploadedFile: lazy stream access, one-time moves and the
normalization of raw upload submissions.

Run:
    python -m pytest tests/test_uploaded_file.py -v
"""

import io
import logging
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from msgio.common.errors import InvalidUploadTargetError, StreamError, UploadedFileError  # noqa: E402
from msgio.common.models import UploadErrorCode  # noqa: E402
from msgio.http import uploaded_file as uploaded_file_module  # noqa: E402
from msgio.http import wrappers as wrappers_module  # noqa: E402
from msgio.http.uploaded_file import UploadedFile  # noqa: E402
from msgio.http.wrappers import register_wrapper, unregister_wrapper  # noqa: E402
from msgio.server.config import UploadSettings  # noqa: E402
from msgio.server.sapi import request_uploads, upload_registry  # noqa: E402

# ── Helpers ────────────────────────────────────────────────────


def _upload(tmp_path: Path, content: bytes = b"file body", **kwargs) -> UploadedFile:
    src = tmp_path / "upload.tmp"
    src.write_bytes(content)
    kwargs.setdefault("name", "report.pdf")
    kwargs.setdefault("type", "application/pdf")
    kwargs.setdefault("size", len(content))
    return UploadedFile(src, **kwargs)


# ── accessors ──────────────────────────────────────────────────


def test_accessors(tmp_path: Path):
    f = _upload(tmp_path, error=UploadErrorCode.PARTIAL)
    assert f.get_client_filename() == "report.pdf"
    assert f.get_client_media_type() == "application/pdf"
    assert f.get_size() == 9
    assert f.get_error() is UploadErrorCode.PARTIAL
    assert f.sapi is False
    assert f.moved is False


def test_defaults(tmp_path: Path):
    f = UploadedFile(tmp_path / "x")
    assert f.get_client_filename() is None
    assert f.get_client_media_type() is None
    assert f.get_size() is None
    assert f.get_error() is UploadErrorCode.OK


def test_error_code_from_int(tmp_path: Path):
    assert UploadedFile(tmp_path / "x", error=4).get_error() is UploadErrorCode.NO_FILE


# ── get_stream ─────────────────────────────────────────────────


def test_stream_is_memoized(tmp_path: Path):
    f = _upload(tmp_path)
    stream = f.get_stream()
    assert stream is f.get_stream()
    assert stream.get_contents() == b"file body"
    assert stream.is_writable() is False
    stream.close()


def test_stream_of_missing_file(tmp_path: Path):
    f = UploadedFile(tmp_path / "missing")
    with pytest.raises(UploadedFileError):
        f.get_stream()


# ── move_to: plain paths ───────────────────────────────────────


def test_move_renames(tmp_path: Path):
    f = _upload(tmp_path)
    target = tmp_path / "final.pdf"
    f.move_to(target)
    assert f.moved is True
    assert target.read_bytes() == b"file body"
    assert not Path(f.file).exists()


def test_move_twice_fails(tmp_path: Path):
    f = _upload(tmp_path)
    f.move_to(tmp_path / "one.pdf")
    with pytest.raises(UploadedFileError, match="already moved"):
        f.move_to(tmp_path / "two.pdf")
    assert not (tmp_path / "two.pdf").exists()


def test_stream_after_move_fails(tmp_path: Path):
    f = _upload(tmp_path)
    stream = f.get_stream()
    f.move_to(tmp_path / "final.pdf")
    assert stream.is_attached() is False
    with pytest.raises(UploadedFileError, match="has already been moved"):
        f.get_stream()


def test_move_to_unwritable_directory(tmp_path: Path):
    f = _upload(tmp_path)
    with pytest.raises(InvalidUploadTargetError):
        f.move_to(tmp_path / "no-such-dir" / "final.pdf")
    assert f.moved is False
    assert Path(f.file).exists()


def test_failed_rename_leaves_file_unmoved(tmp_path: Path):
    f = UploadedFile(tmp_path / "vanished.tmp", name="gone.txt")
    with pytest.raises(UploadedFileError, match="Error moving uploaded file gone.txt"):
        f.move_to(tmp_path / "final.txt")
    assert f.moved is False


# ── move_to: host uploads ──────────────────────────────────────


def test_sapi_move_rejects_unregistered_file(tmp_path: Path):
    f = _upload(tmp_path, sapi=True)
    with pytest.raises(UploadedFileError, match="is not a valid uploaded file"):
        f.move_to(tmp_path / "final.pdf")
    assert f.moved is False
    assert Path(f.file).exists()


def test_sapi_move_of_registered_file(tmp_path: Path):
    f = _upload(tmp_path, sapi=True)
    upload_registry.register(f.file)
    target = tmp_path / "final.pdf"
    f.move_to(target)
    assert f.moved is True
    assert target.read_bytes() == b"file body"
    assert not upload_registry.is_uploaded_file(f.file)


def test_sapi_move_checks_directory_first(tmp_path: Path):
    f = _upload(tmp_path, sapi=True)
    upload_registry.register(f.file)
    with pytest.raises(InvalidUploadTargetError):
        f.move_to(tmp_path / "missing" / "final.pdf")


# ── move_to: stream-style targets ──────────────────────────────


def test_move_to_file_url_copies_then_deletes(tmp_path: Path):
    f = _upload(tmp_path)
    target = tmp_path / "copied.pdf"
    f.move_to(f"file://{target}")
    assert f.moved is True
    assert target.read_bytes() == b"file body"
    assert not Path(f.file).exists()


def test_move_to_registered_scheme(tmp_path: Path):
    received = {}

    class _Sink(io.BytesIO):
        def __init__(self, url: str) -> None:
            super().__init__()
            self.url = url

        def close(self) -> None:
            received[self.url] = self.getvalue()
            super().close()

    register_wrapper("memory", lambda url, mode: _Sink(url))
    try:
        f = _upload(tmp_path, content=b"in memory")
        f.move_to("memory://bucket/key")
    finally:
        unregister_wrapper("memory")
    assert received == {"memory://bucket/key": b"in memory"}


def test_move_to_unknown_scheme(tmp_path: Path):
    f = _upload(tmp_path)
    with pytest.raises(UploadedFileError, match="Error moving uploaded file"):
        f.move_to("nowhere://bucket/key")
    assert f.moved is False
    assert Path(f.file).exists()


def test_failed_delete_after_copy_leaves_duplicate(tmp_path: Path, monkeypatch):
    f = _upload(tmp_path)
    target = tmp_path / "copied.pdf"

    def refuse(path):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(uploaded_file_module.os, "unlink", refuse)
    with pytest.raises(UploadedFileError, match="Error removing uploaded file report.pdf"):
        f.move_to(f"file://{target}")
    monkeypatch.undo()

    assert f.moved is False
    # Both copies remain
    assert target.read_bytes() == b"file body"
    assert Path(f.file).read_bytes() == b"file body"


class _DiskFullSink(io.BytesIO):
    """Writes two bytes to *path*, then fails like a full disk."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path

    def write(self, data) -> int:
        with open(self.path, "ab") as fh:
            fh.write(bytes(data[:2]))
        raise OSError(28, "No space left on device")


def test_failed_copy_removes_partial_file_target(tmp_path: Path, monkeypatch):
    f = _upload(tmp_path)
    target = tmp_path / "copied.pdf"

    def fail_midway(src, dst, chunk_size):
        dst.write(src.read(2))
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(wrappers_module, "copy_stream", fail_midway)
    with pytest.raises(UploadedFileError, match="Error moving uploaded file"):
        f.move_to(f"file://{target}")

    assert not target.exists()
    assert Path(f.file).read_bytes() == b"file body"
    assert f.moved is False


def test_failed_copy_removes_partial_target_through_remover(tmp_path: Path):
    out = tmp_path / "out.bin"
    register_wrapper("flaky", lambda url, mode: _DiskFullSink(out), remover=lambda url: out.unlink())
    try:
        f = _upload(tmp_path)
        with pytest.raises(UploadedFileError):
            f.move_to("flaky://bucket/out.bin")
    finally:
        unregister_wrapper("flaky")

    assert not out.exists()
    assert Path(f.file).exists()
    assert f.moved is False


def test_failed_copy_without_remover_is_logged(tmp_path: Path, caplog):
    out = tmp_path / "out.bin"
    register_wrapper("flaky", lambda url, mode: _DiskFullSink(out))
    try:
        f = _upload(tmp_path)
        with caplog.at_level(logging.WARNING, logger="msgio.http.wrappers"):
            with pytest.raises(UploadedFileError):
                f.move_to("flaky://bucket/out.bin")
    finally:
        unregister_wrapper("flaky")

    assert "partial target left in place" in caplog.text
    assert f.moved is False


def test_opener_exceptions_become_stream_errors(tmp_path: Path):
    def broken(url: str, mode: str):
        raise RuntimeError("bucket unavailable")

    register_wrapper("broken", broken)
    try:
        f = _upload(tmp_path)
        with pytest.raises(UploadedFileError) as excinfo:
            f.move_to("broken://bucket/key")
    finally:
        unregister_wrapper("broken")

    assert isinstance(excinfo.value.__cause__, StreamError)
    assert Path(f.file).exists()


def test_file_url_with_remote_host_is_rejected(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "uploads").mkdir()
    f = _upload(tmp_path)
    with pytest.raises(UploadedFileError):
        f.move_to("file://uploads/out.bin")

    assert not (tmp_path / "uploads" / "out.bin").exists()
    assert Path(f.file).exists()
    assert f.moved is False


def test_file_url_with_localhost(tmp_path: Path):
    f = _upload(tmp_path)
    target = tmp_path / "copied.pdf"
    f.move_to(f"file://localhost{target}")
    assert target.read_bytes() == b"file body"


def test_scheme_separator_must_follow_a_scheme(tmp_path: Path):
    # "://" at position 0 is not a stream target; treated as a plain path
    f = _upload(tmp_path)
    with pytest.raises(InvalidUploadTargetError):
        f.move_to("://nowhere/final.pdf")


# ── parse_uploaded_files ───────────────────────────────────────


def test_parse_single_file():
    raw = {
        "avatar": {
            "name": "me.png",
            "type": "image/png",
            "tmp_name": "/tmp/php123",
            "error": 0,
            "size": 1234,
        }
    }
    parsed = UploadedFile.parse_uploaded_files(raw)
    leaf = parsed["avatar"]
    assert isinstance(leaf, UploadedFile)
    assert leaf.file == "/tmp/php123"
    assert leaf.get_client_filename() == "me.png"
    assert leaf.get_client_media_type() == "image/png"
    assert leaf.get_error() is UploadErrorCode.OK
    assert leaf.get_size() == 1234
    assert leaf.sapi is True


def test_parse_multiple_files_keeps_every_index():
    raw = {
        "photos": {
            "name": {0: "a.jpg", 1: "b.jpg", 2: "c.jpg"},
            "type": {0: "image/jpeg", 1: "image/jpeg", 2: "image/jpeg"},
            "tmp_name": {0: "/tmp/a", 1: "/tmp/b", 2: "/tmp/c"},
            "error": {0: 0, 1: 0, 2: 4},
            "size": {0: 10, 1: 20, 2: 0},
        }
    }
    parsed = UploadedFile.parse_uploaded_files(raw)
    photos = parsed["photos"]
    assert isinstance(photos, dict)
    assert sorted(photos) == [0, 1, 2]
    assert [photos[i].get_client_filename() for i in range(3)] == ["a.jpg", "b.jpg", "c.jpg"]
    assert [photos[i].file for i in range(3)] == ["/tmp/a", "/tmp/b", "/tmp/c"]
    assert photos[2].get_error() is UploadErrorCode.NO_FILE
    assert all(photos[i].sapi for i in range(3))


def test_parse_multiple_files_from_lists():
    raw = {
        "photos": {
            "name": ["a.jpg", "b.jpg"],
            "type": ["image/jpeg", "image/png"],
            "tmp_name": ["/tmp/a", "/tmp/b"],
            "error": [0, 0],
            "size": [1, 2],
        }
    }
    photos = UploadedFile.parse_uploaded_files(raw)["photos"]
    assert len(photos) == 2
    assert photos[1].get_client_media_type() == "image/png"


def test_parse_nested_fields():
    raw = {
        "docs": {
            "cv": {"name": "cv.pdf", "type": "application/pdf", "tmp_name": "/tmp/cv", "error": 0, "size": 5},
            "letters": {
                "name": {"intro": "hi.txt"},
                "type": {"intro": "text/plain"},
                "tmp_name": {"intro": "/tmp/hi"},
                "error": {"intro": 0},
                "size": {"intro": 2},
            },
        }
    }
    parsed = UploadedFile.parse_uploaded_files(raw)
    assert parsed["docs"]["cv"].get_client_filename() == "cv.pdf"
    assert parsed["docs"]["letters"]["intro"].file == "/tmp/hi"


def test_parse_deeply_nested_indexes():
    raw = {
        "gallery": {
            "name": {"summer": {0: "beach.jpg", 1: "sun.jpg"}},
            "type": {"summer": {0: "image/jpeg", 1: "image/jpeg"}},
            "tmp_name": {"summer": {0: "/tmp/1", 1: "/tmp/2"}},
            "error": {"summer": {0: 0, 1: 0}},
            "size": {"summer": {0: 3, 1: 4}},
        }
    }
    parsed = UploadedFile.parse_uploaded_files(raw)
    summer = parsed["gallery"]["summer"]
    assert summer[0].get_client_filename() == "beach.jpg"
    assert summer[1].get_size() == 4


def test_parse_skips_scalars_without_error():
    parsed = UploadedFile.parse_uploaded_files({"junk": "value", "empty": {}})
    assert parsed == {"empty": {}}


def test_parse_rejects_unknown_error_code():
    with pytest.raises(ValueError):
        UploadedFile.parse_uploaded_files({"f": {"tmp_name": "/tmp/x", "error": 5}})


# ── create_from_environ ────────────────────────────────────────


def test_environ_prefers_normalized_tree(tmp_path: Path):
    settings = UploadSettings(upload_tmp_dir=tmp_path)
    tree = {"avatar": UploadedFile(tmp_path / "a")}
    raw = {"other": {"tmp_name": "/tmp/x", "error": 0}}
    assert UploadedFile.create_from_environ({"msgio.files": tree}, raw, settings=settings) is tree


def test_environ_parses_raw_files(tmp_path: Path):
    settings = UploadSettings(upload_tmp_dir=tmp_path)
    raw = {"avatar": {"name": "a.png", "type": "image/png", "tmp_name": "/tmp/x", "error": 0, "size": 1}}
    parsed = UploadedFile.create_from_environ({}, raw, settings=settings)
    assert parsed["avatar"].get_client_filename() == "a.png"


def test_environ_without_uploads(tmp_path: Path):
    settings = UploadSettings(upload_tmp_dir=tmp_path)
    assert UploadedFile.create_from_environ({"REQUEST_METHOD": "GET"}, settings=settings) == {}


def test_environ_ingests_multipart_body(tmp_path: Path, multipart):
    settings = UploadSettings(upload_tmp_dir=tmp_path)
    content_type, body = multipart(
        [
            ("title", None, None, b"Holiday"),
            ("avatar", "me.png", "image/png", b"PNGDATA"),
            ("photos[]", "a.jpg", "image/jpeg", b"AAA"),
            ("photos[]", "b.jpg", "image/jpeg", b"BBBB"),
        ]
    )
    environ = {
        "REQUEST_METHOD": "POST",
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    tree = UploadedFile.create_from_environ(environ, settings=settings)

    assert environ["msgio.files"] is tree
    assert environ["msgio.form"] == {"title": "Holiday"}
    avatar = tree["avatar"]
    assert avatar.get_stream().get_contents() == b"PNGDATA"
    assert [tree["photos"][i].get_size() for i in (0, 1)] == [3, 4]

    target = tmp_path / "avatar.png"
    avatar.move_to(target)
    assert target.read_bytes() == b"PNGDATA"

    # Second read of the same request reuses the stored tree
    assert UploadedFile.create_from_environ(environ, settings=settings) is tree


def test_environ_move_of_forged_tmp_name(tmp_path: Path):
    forged = tmp_path / "passwd"
    forged.write_bytes(b"secret")
    raw = {"avatar": {"name": "x", "type": "text/plain", "tmp_name": str(forged), "error": 0, "size": 6}}
    parsed = UploadedFile.create_from_environ({}, raw, settings=UploadSettings(upload_tmp_dir=tmp_path))
    with pytest.raises(UploadedFileError, match="is not a valid uploaded file"):
        parsed["avatar"].move_to(tmp_path / "stolen")
    assert forged.exists()
    assert not os.path.exists(tmp_path / "stolen")


def test_request_uploads_removes_unmoved_files(tmp_path: Path, multipart):
    settings = UploadSettings(upload_tmp_dir=tmp_path)
    content_type, body = multipart(
        [
            ("avatar", "me.png", "image/png", b"PNGDATA"),
            ("scratch", "tmp.txt", "text/plain", b"discard me"),
        ]
    )
    environ = {
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    target = tmp_path / "avatar.png"
    with request_uploads(environ):
        tree = UploadedFile.create_from_environ(environ, settings=settings)
        assert len(environ["msgio.upload_tmp_names"]) == 2
        tree["avatar"].move_to(target)
        scratch = Path(tree["scratch"].file)
        assert scratch.exists()

    assert not scratch.exists()
    assert target.read_bytes() == b"PNGDATA"
    assert "msgio.upload_tmp_names" not in environ
