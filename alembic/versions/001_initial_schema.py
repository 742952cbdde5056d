"""initial schema - mappings, exchange rates, jobs, activity and webhook logs

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-16
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from skusync.database import UTCDateTime

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sku_mappings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("product_name", sa.String(255)),
        sa.Column("marketplace_product_ref", sa.String(100), nullable=False),
        sa.Column("storefront_product_ref", sa.String(100), nullable=False),
        sa.Column("variant_ref", sa.String(100), nullable=False),
        sa.Column("storefront_inventory_item_ref", sa.String(100)),
        sa.Column("price_margin", sa.Numeric(6, 4), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("deactivated_at", UTCDateTime()),
        sa.Column("sync_status", sa.String(20), nullable=False),
        sa.Column("sync_error", sa.Text()),
        sa.Column("last_synced_at", UTCDateTime()),
        sa.Column("last_marketplace_qty", sa.Integer()),
        sa.Column("last_storefront_qty", sa.Integer()),
        sa.Column("last_storefront_committed", sa.Integer()),
        sa.Column("last_marketplace_price", sa.Numeric(14, 2)),
        sa.Column("last_storefront_price", sa.Numeric(14, 2)),
        sa.Column("last_known_at", UTCDateTime()),
        sa.Column("created_at", UTCDateTime()),
        sa.Column("updated_at", UTCDateTime()),
    )
    op.create_index("ix_mapping_active", "sku_mappings", ["active"])
    op.create_index("ix_mapping_marketplace_ref", "sku_mappings", ["marketplace_product_ref"])
    op.create_index("ix_mapping_variant_ref", "sku_mappings", ["variant_ref"])
    op.create_index("ix_mapping_inventory_item_ref", "sku_mappings", ["storefront_inventory_item_ref"])

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_currency", sa.String(3), nullable=False),
        sa.Column("target_currency", sa.String(3), nullable=False),
        sa.Column("rate", sa.Numeric(20, 10), nullable=False),
        sa.Column("source", sa.String(10), nullable=False),
        sa.Column("valid_from", UTCDateTime(), nullable=False),
        sa.Column("valid_until", UTCDateTime(), nullable=False),
        sa.Column("reason", sa.String(500)),
        sa.Column("operator_id", sa.String(100)),
        sa.Column("created_at", UTCDateTime()),
    )
    op.create_index("ix_rate_pair_source", "exchange_rates", ["base_currency", "target_currency", "source"])
    op.create_index("ix_rate_validity", "exchange_rates", ["valid_from", "valid_until"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.String(32), nullable=False, unique=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(100)),
        sa.Column("skus", sa.JSON()),
        sa.Column("total_items", sa.Integer()),
        sa.Column("success_count", sa.Integer()),
        sa.Column("failed_count", sa.Integer()),
        sa.Column("skipped_count", sa.Integer()),
        sa.Column("errors", sa.JSON()),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("created_at", UTCDateTime()),
        sa.Column("started_at", UTCDateTime()),
        sa.Column("completed_at", UTCDateTime()),
    )
    op.create_index("ix_job_status", "sync_jobs", ["status"])
    op.create_index("ix_job_kind_created", "sync_jobs", ["kind", "created_at"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("sku", sa.String(64)),
        sa.Column("platform", sa.String(20)),
        sa.Column("job_id", sa.String(32)),
        sa.Column("success", sa.Boolean()),
        sa.Column("message", sa.String(500)),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", UTCDateTime()),
    )
    op.create_index("ix_activity_sku_time", "activity_logs", ["sku", "created_at"])
    op.create_index("ix_activity_created", "activity_logs", ["created_at"])

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("external_id", sa.String(255)),
        sa.Column("sku", sa.String(64)),
        sa.Column("payload", sa.JSON()),
        sa.Column("processed", sa.Boolean()),
        sa.Column("success", sa.Boolean()),
        sa.Column("error", sa.Text()),
        sa.Column("processed_at", UTCDateTime()),
        sa.Column("created_at", UTCDateTime()),
    )
    op.create_index("ix_webhook_platform_event", "webhook_logs", ["platform", "event", "created_at"])
    op.create_index("ix_webhook_external_id", "webhook_logs", ["platform", "external_id"])
    op.create_index("ix_webhook_processed", "webhook_logs", ["processed", "created_at"])


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE, dev/test only."""
    for table in ("webhook_logs", "activity_logs", "sync_jobs", "exchange_rates", "sku_mappings"):
        op.drop_table(table)
