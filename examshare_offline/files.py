from __future__ import annotations
import base64
import mimetypes
import re
from pathlib import Path
from typing import Union

from .errors import InvalidUpload

DEFAULT_ACCEPTED_TYPES = "application/pdf"
DEFAULT_MAX_SIZE_MB = 50

_DATA_URL_RE = re.compile(r"data:([a-zA-Z0-9]+/[a-zA-Z0-9\-.+]+);base64,")


def guess_mime(path: Union[str, Path]) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


def mime_from_data_url(value: str) -> str:
    match = _DATA_URL_RE.search(value or "")
    return match.group(1) if match else ""


def validate_upload(
    path: Union[str, Path],
    accepted_types: str = DEFAULT_ACCEPTED_TYPES,
    max_size_mb: float = DEFAULT_MAX_SIZE_MB,
) -> str:
    """Check type and size of a file before it is submitted. Returns its MIME type."""
    p = Path(path)
    if not p.is_file():
        raise InvalidUpload(f"File not found: {p}")
    mime = guess_mime(p)
    allowed = [t.strip() for t in accepted_types.split(",") if t.strip()]
    if allowed and mime not in allowed:
        raise InvalidUpload(f"Invalid file type. Please upload a {' or '.join(allowed)} file.")
    if p.stat().st_size > max_size_mb * 1024 * 1024:
        raise InvalidUpload(f"File is too large. Maximum size is {max_size_mb}MB.")
    return mime


def file_to_data_url(
    path: Union[str, Path],
    accepted_types: str = DEFAULT_ACCEPTED_TYPES,
    max_size_mb: float = DEFAULT_MAX_SIZE_MB,
) -> str:
    mime = validate_upload(path, accepted_types, max_size_mb)
    encoded = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"
