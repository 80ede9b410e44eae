from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING

from avatar_ingest.db.models import ImageKind

from .classifier import SourceInfo, SourceKind

if TYPE_CHECKING:
    from avatar_ingest.core.config import Settings

__all__ = [
    "ANIMATABLE_FORMATS",
    "PolicyAction",
    "PolicyLimits",
    "PolicyDecision",
    "fit_within",
    "evaluate",
]

ANIMATABLE_FORMATS = frozenset({"WEBP", "GIF"})


class PolicyAction(str, enum.Enum):
    pass_through = "pass_through"
    transcode = "transcode"
    reject = "reject"


@dataclass(frozen=True, slots=True)
class PolicyLimits:
    """Ceilings and encoder knobs, supplied by deployment configuration."""

    max_source_dimension: int = 5000
    max_source_bytes: int = 25_000_000
    max_source_frames: int = 1000
    max_animation_pixels: int = 400_000_000
    max_file_size: int = 1_000_000
    avatar_max_dimension: int = 512
    banner_max_dimension: int = 1024
    target_format: str = "WEBP"
    quality: int = 90
    min_quality: int = 50
    quality_step: int = 10
    resize_step: float = 0.75
    min_dimension: int = 64

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PolicyLimits":
        return cls(
            max_source_dimension=settings.max_source_dimension,
            max_source_bytes=settings.max_source_bytes,
            max_source_frames=settings.max_source_frames,
            max_animation_pixels=settings.max_animation_pixels,
            max_file_size=settings.max_file_size,
            avatar_max_dimension=settings.avatar_max_dimension,
            banner_max_dimension=settings.banner_max_dimension,
            target_format=settings.output_format.upper(),
            quality=settings.output_quality,
            min_quality=min(settings.min_output_quality, settings.output_quality),
            quality_step=settings.quality_step,
            resize_step=settings.resize_step,
            min_dimension=settings.min_dimension,
        )

    def ceiling_for(self, role: ImageKind) -> tuple[int, int]:
        if role is ImageKind.banner:
            return self.banner_max_dimension, self.banner_max_dimension
        return self.avatar_max_dimension, self.avatar_max_dimension

    def format_for(self, kind: SourceKind) -> str:
        if kind is SourceKind.animated and self.target_format not in ANIMATABLE_FORMATS:
            return "WEBP"
        return self.target_format


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    action: PolicyAction
    target_format: str
    target_size: tuple[int, int]
    reason: str | None = None


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale (width, height) down to fit the box, keeping aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    ratio = min(max_width / width, max_height / height)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def evaluate(source: SourceInfo, limits: PolicyLimits, role: ImageKind) -> PolicyDecision:
    """Decide what to do with a classified source.

    Rejects sources beyond the configured maxima, passes through sources that
    are already in the target format and inside every ceiling, and routes the
    rest to the transcoder with an aspect-preserving target size.
    """
    target_format = limits.format_for(source.kind)
    original_size = (source.width, source.height)

    if source.width <= 0 or source.height <= 0:
        return PolicyDecision(PolicyAction.reject, target_format, original_size, "image has no pixels")

    if source.width > limits.max_source_dimension or source.height > limits.max_source_dimension:
        reason = (
            f"original image dimensions too large: {source.width}x{source.height}"
            f" > {limits.max_source_dimension}x{limits.max_source_dimension}"
        )
        return PolicyDecision(PolicyAction.reject, target_format, original_size, reason)

    if source.byte_size > limits.max_source_bytes:
        reason = f"image file size too large ({source.byte_size} > {limits.max_source_bytes})"
        return PolicyDecision(PolicyAction.reject, target_format, original_size, reason)

    if source.kind is SourceKind.animated:
        if source.frame_count > limits.max_source_frames:
            reason = f"animation has too many frames ({source.frame_count} > {limits.max_source_frames})"
            return PolicyDecision(PolicyAction.reject, target_format, original_size, reason)
        total_pixels = source.width * source.height * source.frame_count
        if total_pixels > limits.max_animation_pixels:
            reason = f"animation too large to decode ({total_pixels} pixels > {limits.max_animation_pixels})"
            return PolicyDecision(PolicyAction.reject, target_format, original_size, reason)

    max_width, max_height = limits.ceiling_for(role)
    target_size = fit_within(source.width, source.height, max_width, max_height)

    if (
        source.format == target_format
        and target_size == original_size
        and source.byte_size <= limits.max_file_size
    ):
        return PolicyDecision(PolicyAction.pass_through, target_format, original_size)

    return PolicyDecision(PolicyAction.transcode, target_format, target_size)
