from __future__ import annotations

import pytest
from PIL import Image

from avatar_ingest.ingest.classifier import SourceKind, classify, ensure_decodable, extension_for, mime_type_for
from avatar_ingest.ingest.errors import DecodeError, PolicyViolation


def test_static_png_is_classified_from_header(make_image):
    data = make_image((120, 80), "PNG")
    info = classify(data)
    assert info.format == "PNG"
    assert info.kind is SourceKind.static
    assert (info.width, info.height) == (120, 80)
    assert info.frame_count == 1
    assert info.byte_size == len(data)
    assert info.mime_type == "image/png"


def test_multi_frame_gif_is_animated(make_animation):
    info = classify(make_animation((40, 30), durations=(50, 60, 70)))
    assert info.format == "GIF"
    assert info.kind is SourceKind.animated
    assert info.animated
    assert info.frame_count == 3


def test_single_frame_gif_is_static(make_image):
    assert classify(make_image((16, 16), "GIF")).kind is SourceKind.static


@pytest.mark.parametrize("payload", [b"", b"definitely not an image", b"\x89PNG\r\n\x1a\n"])
def test_garbage_raises_decode_error(payload):
    with pytest.raises(DecodeError) as excinfo:
        classify(payload)
    assert excinfo.value.stage == "decoding"
    assert excinfo.value.retryable is False


def test_unsupported_format_raises_decode_error(make_image):
    with pytest.raises(DecodeError, match="unsupported image format"):
        classify(make_image((8, 8), "BMP"))


def test_decompression_bomb_is_a_policy_violation(monkeypatch, make_image):
    data = make_image((64, 64), "PNG")
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(PolicyViolation):
        classify(data)


def test_truncated_pixel_data_fails_full_decode(make_image):
    data = make_image((64, 64), "PNG", noise=True)
    truncated = data[: len(data) // 2]
    classify(truncated)
    with pytest.raises(DecodeError):
        ensure_decodable(truncated)


def test_format_lookups():
    assert mime_type_for("webp") == "image/webp"
    assert extension_for("JPEG") == "jpg"
