"""Create user_profiles, live_streams and recorded_streams

Revision ID: 20261017_create_live_streams
Revises:
Create Date: 2026-10-17

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_create_live_streams"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # =========================================================
    # 1. user_profiles (owned by the auth provider)
    # =========================================================
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("user_type", sa.String(20), nullable=False, server_default="student"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    # =========================================================
    # 2. live_streams
    # =========================================================
    op.create_table(
        "live_streams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("stream_url", sa.String(255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_live_streams_created_at", "live_streams", ["created_at"])
    op.create_index(
        "ix_live_streams_created_by_active",
        "live_streams",
        ["created_by", "is_active"],
    )

    # =========================================================
    # 3. recorded_streams
    # =========================================================
    op.create_table(
        "recorded_streams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=False),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_recorded_streams_created_by", "recorded_streams", ["created_by"])
    op.create_index("ix_recorded_streams_created_at", "recorded_streams", ["created_at"])


def downgrade():
    op.drop_index("ix_recorded_streams_created_at", table_name="recorded_streams")
    op.drop_index("ix_recorded_streams_created_by", table_name="recorded_streams")
    op.drop_table("recorded_streams")
    op.drop_index("ix_live_streams_created_by_active", table_name="live_streams")
    op.drop_index("ix_live_streams_created_at", table_name="live_streams")
    op.drop_table("live_streams")
    op.drop_table("user_profiles")
