"""Initialize CRM billing reconciliation schema.

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _create_index(bind: sa.engine.Connection, name: str, table: str, columns: list[str], unique: bool = False) -> None:
    if not _has_index(bind, table, name):
        op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "crm_client_profiles"):
        op.create_table(
            "crm_client_profiles",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("business_name", sa.String(length=200), nullable=False, server_default=sa.text("''")),
            sa.Column("notify_by_email", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("notify_by_whatsapp", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("subscription_status", sa.String(length=32), nullable=True),
            sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("subscription_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, op.f("ix_crm_client_profiles_user_id"), "crm_client_profiles", ["user_id"])

    if not _table_exists(bind, "billing_subscriptions"):
        op.create_table(
            "billing_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("client_profile_id", sa.String(length=36), nullable=False),
            sa.Column("plan", sa.String(length=64), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'GHS'")),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("next_payment_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("provider", sa.String(length=32), nullable=True),
            sa.Column("provider_subscription_id", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["client_profile_id"], ["crm_client_profiles.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(
        bind,
        op.f("ix_billing_subscriptions_client_profile_id"),
        "billing_subscriptions",
        ["client_profile_id"],
        unique=True,
    )
    _create_index(bind, op.f("ix_billing_subscriptions_plan"), "billing_subscriptions", ["plan"])
    _create_index(bind, op.f("ix_billing_subscriptions_end_date"), "billing_subscriptions", ["end_date"])
    _create_index(
        bind,
        op.f("ix_billing_subscriptions_provider_subscription_id"),
        "billing_subscriptions",
        ["provider_subscription_id"],
    )
    _create_index(bind, "ix_billing_subscriptions_status_end", "billing_subscriptions", ["status", "end_date"])

    if not _table_exists(bind, "billing_payments"):
        op.create_table(
            "billing_payments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("client_profile_id", sa.String(length=36), nullable=False),
            sa.Column("plan_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("provider_correlation_id", sa.String(length=128), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'GHS'")),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("subscription_id", sa.String(length=36), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["subscription_id"], ["billing_subscriptions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider", "provider_correlation_id", name="uq_billing_payments_provider_correlation"),
        )
    _create_index(bind, op.f("ix_billing_payments_client_profile_id"), "billing_payments", ["client_profile_id"])
    _create_index(bind, op.f("ix_billing_payments_status"), "billing_payments", ["status"])
    _create_index(bind, op.f("ix_billing_payments_subscription_id"), "billing_payments", ["subscription_id"])
    _create_index(bind, "ix_billing_payments_profile_status", "billing_payments", ["client_profile_id", "status"])

    if not _table_exists(bind, "crm_notifications"):
        op.create_table(
            "crm_notifications",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("client_profile_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("channels", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("dedupe_key", sa.String(length=160), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, op.f("ix_crm_notifications_client_profile_id"), "crm_notifications", ["client_profile_id"])
    _create_index(bind, op.f("ix_crm_notifications_user_id"), "crm_notifications", ["user_id"])
    _create_index(bind, op.f("ix_crm_notifications_status"), "crm_notifications", ["status"])
    _create_index(bind, op.f("ix_crm_notifications_dedupe_key"), "crm_notifications", ["dedupe_key"], unique=True)
    _create_index(bind, op.f("ix_crm_notifications_created_at"), "crm_notifications", ["created_at"])
    _create_index(bind, "ix_crm_notifications_status_created", "crm_notifications", ["status", "created_at"])

    if not _table_exists(bind, "billing_webhook_audit_logs"):
        op.create_table(
            "billing_webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("provider_event_id", sa.String(length=128), nullable=True),
            sa.Column("provider_correlation_id", sa.String(length=128), nullable=True),
            sa.Column("signature", sa.String(length=1024), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "event_type", "provider_event_id", "provider_correlation_id", "outcome"):
        _create_index(
            bind,
            op.f(f"ix_billing_webhook_audit_logs_{column}"),
            "billing_webhook_audit_logs",
            [column],
        )


def downgrade() -> None:
    op.drop_table("billing_webhook_audit_logs")
    op.drop_table("crm_notifications")
    op.drop_table("billing_payments")
    op.drop_table("billing_subscriptions")
    op.drop_table("crm_client_profiles")
