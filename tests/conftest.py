"""Shared fixtures for msgio tests."""

import sys
from pathlib import Path
from typing import Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from msgio.server.sapi import upload_registry  # noqa: E402

BOUNDARY = "msgio-test-boundary"


def build_multipart(parts: list[tuple[str, Optional[str], Optional[str], bytes]]) -> tuple[str, bytes]:
    """Encode ``(field, filename, content_type, data)`` parts.

    A part with ``filename=None`` is a plain form field.

    Returns:
        Tuple of (Content-Type header value, body bytes)
    """
    chunks = []
    for field, filename, content_type, data in parts:
        disposition = f'form-data; name="{field}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        head = f"--{BOUNDARY}\r\nContent-Disposition: {disposition}\r\n"
        if content_type:
            head += f"Content-Type: {content_type}\r\n"
        chunks.append(head.encode("utf-8") + b"\r\n" + data + b"\r\n")
    chunks.append(f"--{BOUNDARY}--\r\n".encode("utf-8"))
    return f"multipart/form-data; boundary={BOUNDARY}", b"".join(chunks)


@pytest.fixture
def multipart():
    return build_multipart


@pytest.fixture(autouse=True)
def _clean_upload_registry():
    yield
    upload_registry.cleanup()
