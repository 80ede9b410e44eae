from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from avatar_ingest.core.db import Base


class ImageKind(str, enum.Enum):
    avatar = "avatar"
    banner = "banner"


class ImageRecord(Base):
    __tablename__ = "images"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_url: Mapped[str | None] = mapped_column(String(2048), nullable=True, index=True)
    original_file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_attachment_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    source_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[ImageKind] = mapped_column(Enum(ImageKind, native_enum=False, length=16), nullable=False)
    content_type: Mapped[str] = mapped_column(String(64), nullable=False)
    animated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    uploaded_by_account: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    uploaded_by_system: Mapped[str | None] = mapped_column(String(36), nullable=True)


class ImageSource(Base):
    """Maps one (source bytes, role) pair to the stored image it produced.

    Different sources can encode to the same stored bytes, so several rows may
    point at one image.  ``images.source_fingerprint`` only records the source
    that created the image.
    """

    __tablename__ = "image_sources"

    source_fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[ImageKind] = mapped_column(Enum(ImageKind, native_enum=False, length=16), primary_key=True)
    image_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ImageQueueEntry(Base):
    __tablename__ = "image_queue"

    itemid: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    kind: Mapped[ImageKind] = mapped_column(Enum(ImageKind, native_enum=False, length=16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "ImageKind",
    "ImageRecord",
    "ImageSource",
    "ImageQueueEntry",
]
