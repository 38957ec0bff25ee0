"""Create products and chat_sessions tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Baseline schema: the product cache and chat transcripts.

Rollback: downgrade() drops both tables (all cached products and chat
history are lost).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "barcode",
            sa.String(14),
            nullable=False,
            comment="EAN/UPC barcode, 8 to 14 digits",
        ),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("brand", sa.String(512), nullable=True),
        sa.Column("ingredients", sa.Text(), nullable=True),
        sa.Column(
            "nutrients",
            sa.JSON(),
            nullable=True,
            comment="Upstream nutriments mapping, stored as-is",
        ),
        sa.Column(
            "images",
            sa.JSON(),
            nullable=False,
            comment="Ordered list of {type, url}",
        ),
        sa.Column(
            "last_fetched_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="When this record was last refreshed from upstream (UTC)",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    # Unique: upserts conflict on barcode
    op.create_index("ix_products_barcode", "products", ["barcode"], unique=True)
    # Expiry filter on reads and the purge DELETE
    op.create_index("idx_products_last_fetched_at", "products", ["last_fetched_at"])

    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("session_id", sa.String(36), nullable=False),
        sa.Column("model_id", sa.String(64), nullable=False),
        sa.Column("messages", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "session_id", name="uq_chat_sessions_user_session"),
    )
    op.create_index("ix_chat_sessions_user_id", "chat_sessions", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_chat_sessions_user_id", table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_index("idx_products_last_fetched_at", table_name="products")
    op.drop_index("ix_products_barcode", table_name="products")
    op.drop_table("products")
