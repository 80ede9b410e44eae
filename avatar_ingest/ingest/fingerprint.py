from __future__ import annotations

from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path

__all__ = [
    "FINGERPRINT_LENGTH",
    "SourceImage",
    "compute_fingerprint",
    "compute_file_fingerprint",
    "object_key_for",
]

FINGERPRINT_LENGTH = 64


@dataclass(frozen=True, slots=True)
class SourceImage:
    """Raw source bytes plus whatever provenance the caller could supply."""

    data: bytes
    original_url: str | None = None
    original_type: str | None = None
    original_attachment_id: int | None = None

    @property
    def byte_size(self) -> int:
        return len(self.data)


def compute_fingerprint(data: bytes) -> str:
    """Return the hexadecimal SHA256 digest of ``data``.

    Empty input is valid and hashes like any other buffer.

    Args:
        data: The raw bytes.

    Returns:
        A 64 character lowercase hex string.
    """
    return sha256(data).hexdigest()


def compute_file_fingerprint(path: Path, *, chunk_size: int = 8 * 1024 * 1024) -> str:
    """Return the hexadecimal SHA256 digest for a file on disk.

    Args:
        path: The path to the file.
        chunk_size: The chunk size to use when reading the file.

    Returns:
        The hexadecimal SHA256 digest.
    """
    digest = sha256()
    with path.open("rb") as handle:
        while chunk := handle.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def object_key_for(fingerprint: str, extension: str) -> str:
    """Derive the object-store key for stored content, sharded on the first two hex digits."""
    if len(fingerprint) != FINGERPRINT_LENGTH:
        raise ValueError(f"fingerprint must be {FINGERPRINT_LENGTH} characters: {fingerprint!r}")
    return f"images/{fingerprint[:2]}/{fingerprint[2:]}.{extension.lstrip('.')}"
