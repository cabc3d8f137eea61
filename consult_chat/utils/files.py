"""MIME and file-name helpers shared by the attachment pipeline and the message adapter."""
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlsplit

from consult_chat.constants import ALLOWED_MIME_TYPES, FileKind, OCTET_STREAM

_EXT_TO_MIME = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
}


def ext_from_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ".bin"
    ct = content_type.lower()
    if ct in ("image/jpeg", "image/jpg"):
        return ".jpg"
    if ct == "image/png":
        return ".png"
    if ct == "image/gif":
        return ".gif"
    if ct == "application/pdf":
        return ".pdf"
    return ".bin"


def mime_from_name(name: Optional[str]) -> str:
    """Guess a MIME type from a file name or URI extension."""
    if not name:
        return OCTET_STREAM
    suffix = PurePosixPath(name.split("?", 1)[0]).suffix.lower()
    return _EXT_TO_MIME.get(suffix, OCTET_STREAM)


def normalize_mime(mime_type: Optional[str]) -> str:
    """Restrict to the allow-list; anything else is sent as a generic binary file."""
    if not mime_type:
        return OCTET_STREAM
    mt = mime_type.strip().lower()
    if mt == "image/jpg":
        mt = "image/jpeg"
    if mt in ALLOWED_MIME_TYPES:
        return mt
    return OCTET_STREAM


def classify_file_type(value: Optional[str]) -> Optional[FileKind]:
    """Map a MIME type or a loose hint ("jpg", "pdf", ...) to a renderable kind."""
    if not value:
        return None
    lowered = value.lower()
    if lowered.startswith("image/"):
        return FileKind.IMAGE
    if lowered == "application/pdf":
        return FileKind.PDF
    if any(token in lowered for token in ("jpg", "jpeg", "png", "gif")):
        return FileKind.IMAGE
    if "pdf" in lowered:
        return FileKind.PDF
    if lowered == FileKind.IMAGE.value:
        return FileKind.IMAGE
    return None


def extract_file_name(url: Optional[str]) -> str:
    """Last path segment of a URL, without query string."""
    if not url:
        return "Unknown File"
    path = urlsplit(url).path or url
    name = unquote(path).rstrip("/").split("/")[-1]
    return name or "File"


def resolve_file_url(url: Optional[str], public_base: Optional[str]) -> Optional[str]:
    """Turn a stored relative key into an absolute URL under the public storage base."""
    if not url:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    if not public_base:
        return url
    base = public_base.rstrip("/")
    return f"{base}{url}" if url.startswith("/") else f"{base}/{url}"


def placeholder_text(mime_type: str, file_name: str) -> str:
    """Text body for clients that only render the message text."""
    kind = classify_file_type(mime_type)
    if kind is FileKind.IMAGE:
        return f"📷 Image: {file_name}"
    if kind is FileKind.PDF:
        return f"📄 Document: {file_name}"
    return f"📎 File: {file_name}"
