from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20240301_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    image_kind_enum = sa.Enum("avatar", "banner", name="imagekind", native_enum=False, length=16)

    op.create_table(
        "images",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("original_url", sa.String(length=2048), nullable=True),
        sa.Column("original_file_size", sa.Integer(), nullable=True),
        sa.Column("original_type", sa.String(length=64), nullable=True),
        sa.Column("original_attachment_id", sa.BigInteger(), nullable=True),
        sa.Column("source_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("kind", image_kind_enum, nullable=False),
        sa.Column("content_type", sa.String(length=64), nullable=False),
        sa.Column("animated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("uploaded_by_account", sa.BigInteger(), nullable=True),
        sa.Column("uploaded_by_system", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_images_original_url", "images", ["original_url"])
    op.create_index("ix_images_original_attachment_id", "images", ["original_attachment_id"])
    op.create_index("ix_images_source_fingerprint", "images", ["source_fingerprint"])
    op.create_index("ix_images_uploaded_by_account", "images", ["uploaded_by_account"])

    op.create_table(
        "image_sources",
        sa.Column("source_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("kind", image_kind_enum, nullable=False),
        sa.Column("image_id", sa.String(length=64), sa.ForeignKey("images.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("source_fingerprint", "kind", name="pk_image_sources"),
    )
    op.create_index("ix_image_sources_image_id", "image_sources", ["image_id"])

    op.create_table(
        "image_queue",
        sa.Column("itemid", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("kind", image_kind_enum, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("image_queue")
    op.drop_index("ix_image_sources_image_id", table_name="image_sources")
    op.drop_table("image_sources")
    op.drop_index("ix_images_uploaded_by_account", table_name="images")
    op.drop_index("ix_images_source_fingerprint", table_name="images")
    op.drop_index("ix_images_original_attachment_id", table_name="images")
    op.drop_index("ix_images_original_url", table_name="images")
    op.drop_table("images")
