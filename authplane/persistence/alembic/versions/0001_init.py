"""create authorization control plane schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("global_quota_limit", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("name", name="uq_tenants_name"),
    )

    # Memberships carry the role used for RBAC; every tenant keeps at least one owner.
    op.create_table(
        "tenant_users",
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_tenant_users_user_id", "tenant_users", ["user_id"], unique=False)
    op.create_index("ix_tenant_users_tenant_role", "tenant_users", ["tenant_id", "role"], unique=False)

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("service", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("revoked_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"], unique=False)
    op.create_index("ix_sessions_tenant_id", "sessions", ["tenant_id"], unique=False)

    # Only the SHA-256 of each key is stored.
    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("scopes", sa.Text(), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("quota_limit", sa.Integer(), nullable=True),
        sa.Column("quota_period", sa.String(), server_default=sa.text("'month'"), nullable=False),
        sa.Column("status", sa.String(), server_default=sa.text("'active'"), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        _timestamp("expires_at", nullable=True),
        _timestamp("last_used_at", nullable=True),
        _timestamp("revoked_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        _timestamp("canceled_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", name="uq_subscriptions_tenant_id"),
    )

    # A missing item row means the service is disabled for the subscription.
    op.create_table(
        "subscription_items",
        sa.Column(
            "subscription_id",
            sa.String(),
            sa.ForeignKey("subscriptions.id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("service", sa.String(), primary_key=True, nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("updated_at"),
    )

    # Append-only usage ledger; the idempotency key dedupes retried writes.
    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("api_key_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("service", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_usage_events_idempotency_key"),
        sa.CheckConstraint("quantity >= 0", name="ck_usage_events_quantity_non_negative"),
    )
    op.create_index("ix_usage_events_tenant_period", "usage_events", ["tenant_id", "period"], unique=False)
    op.create_index(
        "ix_usage_events_api_key_created",
        "usage_events",
        ["api_key_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "feature_flags",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled_tiers", sa.Text(), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("enabled_tenants", sa.Text(), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("rollout_percentage", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("name", name="uq_feature_flags_name"),
        sa.CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="ck_feature_flags_rollout_range",
        ),
    )

    op.create_table(
        "admin_overrides",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("granted_by", sa.String(), nullable=True),
        _timestamp("expires_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_admin_overrides_tenant_expires",
        "admin_overrides",
        ["tenant_id", "expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_admin_overrides_tenant_expires", table_name="admin_overrides")
    op.drop_table("admin_overrides")
    op.drop_table("feature_flags")
    op.drop_index("ix_usage_events_api_key_created", table_name="usage_events")
    op.drop_index("ix_usage_events_tenant_period", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_table("subscription_items")
    op.drop_table("subscriptions")
    op.drop_index("ix_api_keys_tenant_id", table_name="api_keys")
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_sessions_tenant_id", table_name="sessions")
    op.drop_index("ix_sessions_user_id", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_tenant_users_tenant_role", table_name="tenant_users")
    op.drop_index("ix_tenant_users_user_id", table_name="tenant_users")
    op.drop_table("tenant_users")
    op.drop_table("tenants")
