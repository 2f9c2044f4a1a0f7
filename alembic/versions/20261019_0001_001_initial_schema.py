"""Initial schema: users and bots

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Adds:
- users: accounts with plan tier and status
- bots: per-bot platform/AI configuration (tokens stored as vault blobs)
  and runtime columns written by the provisioning backend
"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── users ──────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("hashed_password", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("plan", sa.String(20), nullable=False, server_default="free"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── bots ───────────────────────────────────────────────────────
    op.create_table(
        "bots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("platform_token_encrypted", sa.Text, nullable=False),
        sa.Column("ai_provider", sa.String(20), nullable=False),
        sa.Column("ai_token_encrypted", sa.Text, nullable=False),
        sa.Column("ai_model", sa.String(100), nullable=False),
        sa.Column("system_prompt", sa.Text, nullable=True),
        sa.Column("config_json", sa.JSON, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="deploying"),
        sa.Column("deployment_handle", sa.String(100), nullable=True),
        sa.Column("internal_port", sa.Integer, nullable=True),
        sa.Column("webhook_url", sa.String(500), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("total_messages", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime, nullable=True),
        sa.Column("last_started_at", sa.DateTime, nullable=True),
        sa.Column("memory_usage_mb", sa.Float, nullable=True),
        sa.Column("cpu_usage_percent", sa.Float, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_bots_user_id", "bots", ["user_id"])
    op.create_index("ix_bots_status", "bots", ["status"])
    op.create_index("ix_bots_deployment_handle", "bots", ["deployment_handle"])


def downgrade() -> None:
    op.drop_index("ix_bots_deployment_handle", table_name="bots")
    op.drop_index("ix_bots_status", table_name="bots")
    op.drop_index("ix_bots_user_id", table_name="bots")
    op.drop_table("bots")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
