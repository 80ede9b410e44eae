"""Re-encode sources into the stored representation.

Static and animated sources share one contract (decode once, already scaled
to the target size, then ``encode(size, format, quality) -> bytes`` as many
times as needed to fit the byte ceiling) and differ only in how frames are
decoded and written.  Sizes passed to ``encode`` never exceed the decode
size.  The strategy is picked once from the classifier's ``SourceKind``.

Animated frames come out of Pillow already composited onto the canvas, so each
output frame is complete.  Per-frame durations and the loop count are carried
over; GIF output uses "restore to background" disposal, which replays the
composited frames exactly.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import ClassVar, Union

from PIL import Image, ImageSequence

from avatar_ingest.core.logging import get_logger

from .classifier import SourceInfo, SourceKind, extension_for, mime_type_for
from .errors import DecodeError, PolicyViolation
from .policy import PolicyDecision, PolicyLimits

__all__ = [
    "TranscodeResult",
    "StaticStrategy",
    "AnimatedStrategy",
    "TranscodeStrategy",
    "strategy_for",
    "shrink_size",
    "transcode",
]

logger = get_logger(component="transcoder")

DEFAULT_FRAME_DURATION_MS = 100
_LOSSY_FORMATS = frozenset({"WEBP", "JPEG"})
_DECODE_FAILURES = (OSError, SyntaxError, ValueError, EOFError)


@dataclass(frozen=True, slots=True)
class TranscodeResult:
    data: bytes
    width: int
    height: int
    format: str
    animated: bool
    quality: int | None = None

    @property
    def content_type(self) -> str:
        return mime_type_for(self.format)

    @property
    def extension(self) -> str:
        return extension_for(self.format)


def _save_options(fmt: str, quality: int) -> dict[str, object]:
    if fmt == "WEBP":
        return {"quality": quality, "method": 4}
    if fmt == "JPEG":
        return {"quality": quality, "optimize": True}
    if fmt == "PNG":
        return {"optimize": True}
    return {}


def _normalise_mode(image: Image.Image, fmt: str) -> Image.Image:
    if fmt == "JPEG":
        if image.mode in ("RGBA", "LA", "P"):
            # JPEG has no alpha, flatten onto white
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        return image.convert("RGB") if image.mode != "RGB" else image
    if image.mode not in ("RGB", "RGBA"):
        return image.convert("RGBA")
    return image


def _resize(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    if image.size == size:
        return image
    return image.resize(size, Image.Resampling.LANCZOS)


@dataclass(slots=True)
class StaticStrategy:
    kind: ClassVar[SourceKind] = SourceKind.static

    image: Image.Image

    @classmethod
    def decode(cls, data: bytes, fmt: str, size: tuple[int, int]) -> "StaticStrategy":
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            image = _resize(_normalise_mode(source, fmt), size)
            if image is source:
                image = source.copy()
        return cls(image=image)

    def adjusts_quality(self, fmt: str) -> bool:
        return fmt in _LOSSY_FORMATS

    def encode(self, size: tuple[int, int], fmt: str, quality: int) -> bytes:
        buffer = io.BytesIO()
        _resize(self.image, size).save(buffer, format=fmt, **_save_options(fmt, quality))
        return buffer.getvalue()


@dataclass(slots=True)
class AnimatedStrategy:
    kind: ClassVar[SourceKind] = SourceKind.animated

    frames: list[Image.Image]
    durations: list[int]
    loop: int

    @classmethod
    def decode(cls, data: bytes, fmt: str, size: tuple[int, int]) -> "AnimatedStrategy":
        frames: list[Image.Image] = []
        durations: list[int] = []
        with Image.open(io.BytesIO(data)) as source:
            loop = int(source.info.get("loop", 0))
            for frame in ImageSequence.Iterator(source):
                # WebP fills in the frame duration on load, which convert triggers;
                # only the scaled copy is kept
                frames.append(_resize(frame.convert("RGBA"), size))
                duration = frame.info.get("duration")
                durations.append(int(duration) if duration else DEFAULT_FRAME_DURATION_MS)
        if not frames:
            raise DecodeError("animation has no frames", stage="transcoding")
        return cls(frames=frames, durations=durations, loop=loop)

    def adjusts_quality(self, fmt: str) -> bool:
        # animations shrink in size only
        return False

    def encode(self, size: tuple[int, int], fmt: str, quality: int) -> bytes:
        resized = [_resize(frame, size) for frame in self.frames]
        options: dict[str, object] = {
            "save_all": True,
            "append_images": resized[1:],
            "duration": list(self.durations),
            "loop": self.loop,
        }
        if fmt == "WEBP":
            options.update(quality=quality, method=4)
        elif fmt == "GIF":
            options.update(disposal=2, optimize=False)
        buffer = io.BytesIO()
        resized[0].save(buffer, format=fmt, **options)
        return buffer.getvalue()


TranscodeStrategy = Union[StaticStrategy, AnimatedStrategy]

_STRATEGIES: dict[SourceKind, type[StaticStrategy] | type[AnimatedStrategy]] = {
    SourceKind.static: StaticStrategy,
    SourceKind.animated: AnimatedStrategy,
}


def strategy_for(kind: SourceKind) -> type[StaticStrategy] | type[AnimatedStrategy]:
    return _STRATEGIES[kind]


def shrink_size(size: tuple[int, int], limits: PolicyLimits) -> tuple[int, int] | None:
    """Next smaller size on the way to the floor, or None once the floor is reached."""
    width, height = size
    longer = max(width, height)
    if longer <= limits.min_dimension:
        return None
    target_longer = max(limits.min_dimension, int(longer * limits.resize_step))
    scale = target_longer / longer
    return max(1, round(width * scale)), max(1, round(height * scale))


def transcode(data: bytes, source: SourceInfo, decision: PolicyDecision, limits: PolicyLimits) -> TranscodeResult:
    """Decode ``data`` and encode it to fit ``decision`` and the byte ceiling.

    CPU bound; callers run it in a worker thread.

    Raises:
        DecodeError: Pixel data could not be decoded.
        PolicyViolation: No encoding down to the floor size fits ``max_file_size``.
    """
    fmt = decision.target_format
    try:
        strategy: TranscodeStrategy = strategy_for(source.kind).decode(data, fmt, decision.target_size)
    except _DECODE_FAILURES as exc:
        raise DecodeError("could not decode image, is it corrupted?", stage="transcoding") from exc

    size = decision.target_size
    quality = limits.quality
    attempts = 0
    while True:
        attempts += 1
        encoded = strategy.encode(size, fmt, quality)
        if len(encoded) <= limits.max_file_size:
            logger.debug(
                "transcode_fit",
                kind=source.kind.value,
                format=fmt,
                source_size=[source.width, source.height],
                size=list(size),
                quality=quality,
                bytes=len(encoded),
                attempts=attempts,
            )
            return TranscodeResult(
                data=encoded,
                width=size[0],
                height=size[1],
                format=fmt,
                animated=source.kind is SourceKind.animated,
                quality=quality if fmt in _LOSSY_FORMATS else None,
            )

        if strategy.adjusts_quality(fmt) and quality - limits.quality_step >= limits.min_quality:
            quality -= limits.quality_step
            continue

        next_size = shrink_size(size, limits)
        if next_size is None:
            raise PolicyViolation(
                f"{source.kind.value} image still {len(encoded)} bytes at {size[0]}x{size[1]}"
                f" (limit {limits.max_file_size})",
                stage="transcoding",
            )
        size = next_size
