from __future__ import annotations

import enum
import io
from dataclasses import dataclass

from PIL import Image, ImageSequence, UnidentifiedImageError

from .errors import DecodeError, PolicyViolation

__all__ = [
    "IMAGE_FORMATS",
    "SourceKind",
    "SourceInfo",
    "classify",
    "ensure_decodable",
    "mime_type_for",
    "extension_for",
]

# Pillow format name -> (mime type, file extension)
IMAGE_FORMATS: dict[str, tuple[str, str]] = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "GIF": ("image/gif", "gif"),
    "WEBP": ("image/webp", "webp"),
}

_DECODE_FAILURES = (OSError, SyntaxError, ValueError, EOFError)


class SourceKind(str, enum.Enum):
    static = "static"
    animated = "animated"


@dataclass(frozen=True, slots=True)
class SourceInfo:
    """Header-level facts about a source image."""

    format: str
    kind: SourceKind
    width: int
    height: int
    frame_count: int
    byte_size: int

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.format)

    @property
    def animated(self) -> bool:
        return self.kind is SourceKind.animated


def mime_type_for(fmt: str) -> str:
    return IMAGE_FORMATS[fmt.upper()][0]


def extension_for(fmt: str) -> str:
    return IMAGE_FORMATS[fmt.upper()][1]


def classify(data: bytes) -> SourceInfo:
    """Identify format, animation and dimensions without decoding pixel data.

    Dimensions are read from the header so that oversized sources can be
    rejected before a decode allocates memory for them (a 16000x16000 PNG is a
    few kilobytes on disk and close to a gigabyte decoded).

    Raises:
        DecodeError: The bytes are not a supported image or the header is corrupt.
        PolicyViolation: Pillow refused the image as a decompression bomb.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            fmt = image.format
            if fmt not in IMAGE_FORMATS:
                raise DecodeError(f"unsupported image format: {fmt}", stage="decoding")
            width, height = image.size
            frame_count = int(getattr(image, "n_frames", 1))
    except UnidentifiedImageError as exc:
        raise DecodeError("could not detect image format", stage="decoding") from exc
    except Image.DecompressionBombError as exc:
        raise PolicyViolation(f"original image dimensions too large: {exc}", stage="decoding") from exc
    except _DECODE_FAILURES as exc:
        raise DecodeError("could not decode image, is it corrupted?", stage="decoding") from exc

    kind = SourceKind.animated if frame_count > 1 else SourceKind.static
    return SourceInfo(
        format=fmt,
        kind=kind,
        width=width,
        height=height,
        frame_count=frame_count,
        byte_size=len(data),
    )


def ensure_decodable(data: bytes) -> None:
    """Fully decode every frame, for sources that will be stored without re-encoding."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            for frame in ImageSequence.Iterator(image):
                frame.load()
    except _DECODE_FAILURES as exc:
        raise DecodeError("could not decode image, is it corrupted?", stage="decoding") from exc
