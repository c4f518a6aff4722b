"""initial reconciliation schema

Revision ID: 0001_reconciliation
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_reconciliation"
down_revision = None
branch_labels = None
depends_on = None


def _record_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("amount_total", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=True),
        sa.Column("provider_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _record_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_vertical", table, ["vertical"])
    op.create_index(f"ix_{table}_session_id", table, ["session_id"], unique=True)
    op.create_index(f"ix_{table}_payment_intent_id", table, ["payment_intent_id"])
    op.create_index(f"ix_{table}_customer_email", table, ["customer_email"])
    op.create_index(f"ix_{table}_status", table, ["status"])


def upgrade() -> None:
    op.create_table(
        "pricing_configs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_configs_vertical", "pricing_configs", ["vertical"])

    op.create_table(
        "payment_records",
        *_record_columns(),
        sa.Column("pricing_config_id", sa.Integer(), nullable=True),
        sa.Column("pricing_total_snapshot", sa.Numeric(10, 2), nullable=True),
        sa.ForeignKeyConstraint(["pricing_config_id"], ["pricing_configs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _record_indexes("payment_records")
    op.create_index("ix_payment_records_pricing_config_id", "payment_records", ["pricing_config_id"])

    op.create_table(
        "discount_records",
        *_record_columns(),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("institute_or_university", sa.String(), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _record_indexes("discount_records")

    op.create_table(
        "status_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("record_kind", sa.String(length=16), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_status_timeline_record_id", "status_timeline", ["record_id"])
    op.create_index("ix_status_timeline_session_id", "status_timeline", ["session_id"])
    op.create_index("ix_status_timeline_event_id", "status_timeline", ["event_id"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "vertical"),
        sa.UniqueConstraint("event_id", "vertical", name="uq_processed_event_vertical"),
    )


def downgrade() -> None:
    op.drop_table("processed_events")
    op.drop_index("ix_status_timeline_event_id", table_name="status_timeline")
    op.drop_index("ix_status_timeline_session_id", table_name="status_timeline")
    op.drop_index("ix_status_timeline_record_id", table_name="status_timeline")
    op.drop_table("status_timeline")
    for table in ("discount_records", "payment_records"):
        if table == "payment_records":
            op.drop_index("ix_payment_records_pricing_config_id", table_name=table)
        for column in ("status", "customer_email", "payment_intent_id", "session_id", "vertical"):
            op.drop_index(f"ix_{table}_{column}", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_pricing_configs_vertical", table_name="pricing_configs")
    op.drop_table("pricing_configs")
