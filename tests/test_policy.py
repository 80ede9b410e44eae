from __future__ import annotations

import pytest

from avatar_ingest.db.models import ImageKind
from avatar_ingest.ingest.classifier import SourceInfo, SourceKind
from avatar_ingest.ingest.policy import PolicyAction, PolicyLimits, evaluate, fit_within


def _info(fmt="PNG", size=(100, 100), byte_size=10_000, kind=SourceKind.static, frames=None) -> SourceInfo:
    return SourceInfo(
        format=fmt,
        kind=kind,
        width=size[0],
        height=size[1],
        frame_count=frames or (3 if kind is SourceKind.animated else 1),
        byte_size=byte_size,
    )


def test_small_source_in_target_format_passes_through():
    decision = evaluate(_info("WEBP", (256, 256), 20_000), PolicyLimits(), ImageKind.avatar)
    assert decision.action is PolicyAction.pass_through
    assert decision.target_size == (256, 256)
    assert decision.target_format == "WEBP"


def test_large_source_is_transcoded_to_role_ceiling():
    decision = evaluate(_info("PNG", (4000, 4000), 20_000_000), PolicyLimits(), ImageKind.avatar)
    assert decision.action is PolicyAction.transcode
    assert decision.target_size == (512, 512)
    assert decision.target_format == "WEBP"


def test_banner_ceiling_keeps_aspect_ratio():
    decision = evaluate(_info("PNG", (2048, 1024)), PolicyLimits(), ImageKind.banner)
    assert decision.target_size == (1024, 512)


def test_other_format_under_ceiling_is_transcoded_at_original_size():
    decision = evaluate(_info("PNG", (128, 64)), PolicyLimits(), ImageKind.avatar)
    assert decision.action is PolicyAction.transcode
    assert decision.target_size == (128, 64)


def test_target_format_over_byte_ceiling_is_transcoded():
    decision = evaluate(_info("WEBP", (256, 256), 2_000_000), PolicyLimits(), ImageKind.avatar)
    assert decision.action is PolicyAction.transcode


@pytest.mark.parametrize(
    "info",
    [
        _info(size=(6000, 100)),
        _info(size=(100, 6000)),
        _info(byte_size=30_000_000),
        _info(size=(0, 10)),
    ],
)
def test_sources_beyond_maxima_are_rejected(info):
    decision = evaluate(info, PolicyLimits(), ImageKind.avatar)
    assert decision.action is PolicyAction.reject
    assert decision.reason


def test_animated_sources_keep_an_animatable_format():
    limits = PolicyLimits(target_format="PNG")
    decision = evaluate(_info("GIF", (64, 64), kind=SourceKind.animated), limits, ImageKind.avatar)
    assert decision.target_format == "WEBP"
    assert evaluate(_info("GIF", (64, 64)), limits, ImageKind.avatar).target_format == "PNG"


def test_fit_within_never_upscales():
    assert fit_within(10, 20, 512, 512) == (10, 20)
    assert fit_within(1000, 500, 512, 512) == (512, 256)
    assert fit_within(3, 3000, 512, 512) == (1, 512)


def test_limits_from_settings(configure_environment, monkeypatch):
    from avatar_ingest.core.config import get_settings

    monkeypatch.setenv("AVATAR_OUTPUT_FORMAT", "png")
    monkeypatch.setenv("AVATAR_AVATAR_MAX_DIMENSION", "256")
    get_settings.cache_clear()
    limits = PolicyLimits.from_settings(get_settings())
    assert limits.target_format == "PNG"
    assert limits.ceiling_for(ImageKind.avatar) == (256, 256)
    assert limits.ceiling_for(ImageKind.banner) == (1024, 1024)


def test_animation_with_too_many_frames_is_rejected():
    limits = PolicyLimits(max_source_frames=100)
    decision = evaluate(_info("GIF", (64, 64), kind=SourceKind.animated, frames=101), limits, ImageKind.avatar)
    assert decision.action is PolicyAction.reject
    assert "too many frames" in decision.reason


def test_animation_pixel_budget_counts_every_frame():
    limits = PolicyLimits(max_animation_pixels=5000 * 5000 * 10)
    within = evaluate(_info("GIF", (5000, 5000), kind=SourceKind.animated, frames=10), limits, ImageKind.avatar)
    beyond = evaluate(_info("GIF", (5000, 5000), kind=SourceKind.animated, frames=11), limits, ImageKind.avatar)
    assert within.action is PolicyAction.transcode
    assert beyond.action is PolicyAction.reject
    assert "too large to decode" in beyond.reason


def test_static_sources_ignore_the_animation_budget():
    limits = PolicyLimits(max_animation_pixels=1)
    decision = evaluate(_info("PNG", (1000, 1000)), limits, ImageKind.avatar)
    assert decision.action is PolicyAction.transcode
