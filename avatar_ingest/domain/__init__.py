"""Pipeline building blocks shared by the service layer, API and CLI."""

from avatar_ingest.ingest.classifier import SourceInfo, SourceKind, classify, ensure_decodable
from avatar_ingest.ingest.fingerprint import SourceImage, compute_file_fingerprint, compute_fingerprint, object_key_for
from avatar_ingest.ingest.policy import PolicyAction, PolicyDecision, PolicyLimits, evaluate
from avatar_ingest.ingest.pull import ParsedUrl, PullResult, SourceFetcher, parse_url
from avatar_ingest.ingest.transcoder import TranscodeResult, transcode

__all__ = [
    "SourceInfo",
    "SourceKind",
    "classify",
    "ensure_decodable",
    "SourceImage",
    "compute_fingerprint",
    "compute_file_fingerprint",
    "object_key_for",
    "PolicyAction",
    "PolicyDecision",
    "PolicyLimits",
    "evaluate",
    "ParsedUrl",
    "PullResult",
    "SourceFetcher",
    "parse_url",
    "TranscodeResult",
    "transcode",
]
