"""Best-effort audio/image classification of uploaded attachments.

MIME type first; the filename extension decides when the MIME type is
missing, generic (``application/octet-stream``) or unknown. This is not
content sniffing: a client lying about both will get a mis-rendered
attachment, never a crash.
"""
from pathlib import PurePath
from typing import NamedTuple, Optional

from core.errors import InvalidArgumentError
from models.message import ContentType

AUDIO_EXTENSIONS = {"webm", "mp3", "wav", "m4a", "ogg"}
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}

# Browsers record voice notes as webm/ogg containers labelled video/*
_AUDIO_VIDEO_MIMES = {"video/webm", "video/ogg"}

_EXTENSION_BY_MIME = {
    "audio/webm": "webm",
    "video/webm": "webm",
    "audio/ogg": "ogg",
    "video/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


class AttachmentKind(NamedTuple):
    content_type: ContentType
    extension: str


def _normalize_mime(mime: Optional[str]) -> str:
    # "audio/webm;codecs=opus" → "audio/webm"
    return (mime or "").split(";", 1)[0].strip().lower()


def _extension_of(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return PurePath(filename).suffix.lstrip(".").lower()


def classify_attachment(mime_hint: Optional[str], filename: Optional[str] = None) -> AttachmentKind:
    """Return the message content type and the extension to store the blob under.

    Raises InvalidArgumentError when neither hint identifies audio or an image.
    """
    mime = _normalize_mime(mime_hint)
    extension = _extension_of(filename)

    kind: Optional[ContentType] = None
    if mime.startswith("image/"):
        kind = ContentType.IMAGE
    elif mime.startswith("audio/") or mime in _AUDIO_VIDEO_MIMES:
        kind = ContentType.AUDIO
    elif extension in AUDIO_EXTENSIONS:
        kind = ContentType.AUDIO
    elif extension in IMAGE_EXTENSIONS:
        kind = ContentType.IMAGE

    if kind is None:
        raise InvalidArgumentError("Invalid file type. Only images and audio are allowed")

    if not extension:
        extension = _EXTENSION_BY_MIME.get(mime, "")
    return AttachmentKind(kind, extension)
