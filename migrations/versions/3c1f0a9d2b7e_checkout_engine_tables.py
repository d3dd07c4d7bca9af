"""checkout engine tables

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 10:12:41.208113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a9d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _rule_columns():
    return [
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("product_ids", sa.JSON(), nullable=False),
        sa.Column("category_ids", sa.JSON(), nullable=False),
        sa.Column("customer_ids", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade():
    op.create_table(
        "products",
        sa.Column("product_id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category_id", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_products_category_id", "products", ["category_id"])

    op.create_table("pricing_rules", *_rule_columns())

    op.create_table(
        "discount_rules",
        *_rule_columns(),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coupon_code", sa.String(), nullable=True),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
    )
    op.create_index("ix_discount_rules_coupon_code", "discount_rules", ["coupon_code"], unique=True)
    op.create_index("ix_discount_rules_campaign_id", "discount_rules", ["campaign_id"])

    op.create_table(
        "rule_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("discount_rules.id"), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(), nullable=False),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("attempt_id", "rule_id", name="uq_redemption_attempt_rule"),
    )
    op.create_index("ix_rule_redemptions_attempt_id", "rule_redemptions", ["attempt_id"])
    op.create_index("ix_rule_redemptions_rule_id", "rule_redemptions", ["rule_id"])

    op.create_table(
        "checkout_attempts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("coupon_code", sa.String(), nullable=True),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("applied_rule_ids", sa.JSON(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flags", sa.JSON(), nullable=True),
        sa.Column("review_status", sa.String(), nullable=True, server_default="pending"),
        sa.Column("status", sa.String(), nullable=True, server_default="finalized"),
        sa.Column("finalized_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_checkout_attempts_attempt_id", "checkout_attempts", ["attempt_id"], unique=True)
    op.create_index("ix_checkout_attempts_customer_id", "checkout_attempts", ["customer_id"])
    op.create_index("ix_checkout_attempts_review_status", "checkout_attempts", ["review_status"])
    op.create_index("ix_checkout_attempts_status", "checkout_attempts", ["status"])
    op.create_index("ix_checkout_attempts_finalized_at", "checkout_attempts", ["finalized_at"])

    op.create_table(
        "customer_segment_members",
        sa.Column("customer_id", sa.String(), primary_key=True),
        sa.Column("segment_id", sa.String(), primary_key=True),
        sa.Column("added_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_customer_segment_members_segment_id", "customer_segment_members", ["segment_id"])


def downgrade():
    op.drop_table("customer_segment_members")
    op.drop_table("checkout_attempts")
    op.drop_table("rule_redemptions")
    op.drop_table("discount_rules")
    op.drop_table("pricing_rules")
    op.drop_table("products")
