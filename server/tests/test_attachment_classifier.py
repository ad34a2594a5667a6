"""Tests for attachment classification (MIME first, extension fallback)."""
import pytest

from core.errors import InvalidArgumentError
from models.message import ContentType
from services.attachment_classifier import classify_attachment


@pytest.mark.parametrize(
    "mime, filename, expected",
    [
        ("image/png", None, (ContentType.IMAGE, "png")),
        ("image/jpeg", "IMG_0001.JPG", (ContentType.IMAGE, "jpg")),
        ("audio/mpeg", None, (ContentType.AUDIO, "mp3")),
        ("audio/webm;codecs=opus", None, (ContentType.AUDIO, "webm")),
        # Browser voice recordings are often labelled video/webm
        ("video/webm", "voice.webm", (ContentType.AUDIO, "webm")),
        ("application/octet-stream", "note.m4a", (ContentType.AUDIO, "m4a")),
        (None, "photo.webp", (ContentType.IMAGE, "webp")),
        ("", "clip.ogg", (ContentType.AUDIO, "ogg")),
    ],
)
def test_classifies(mime, filename, expected):
    kind = classify_attachment(mime, filename)
    assert (kind.content_type, kind.extension) == expected


@pytest.mark.parametrize(
    "mime, filename",
    [
        ("application/pdf", "doc.pdf"),
        ("video/mp4", "movie.mp4"),
        (None, None),
        ("text/plain", "notes"),
    ],
)
def test_rejects_everything_else(mime, filename):
    with pytest.raises(InvalidArgumentError):
        classify_attachment(mime, filename)


def test_unknown_subtype_without_extension_keeps_kind():
    kind = classify_attachment("image/heic")
    assert kind.content_type == ContentType.IMAGE
    assert kind.extension == ""
