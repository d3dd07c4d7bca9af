"""case-insensitive unique coupon codes

Revision ID: 7a2e5d41c9f0
Revises: 3c1f0a9d2b7e
Create Date: 2026-10-19 15:40:12.530871

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7a2e5d41c9f0'
down_revision: Union[str, Sequence[str], None] = '3c1f0a9d2b7e'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_index(
        "uq_discount_rules_coupon_code_lower",
        "discount_rules",
        [sa.text("lower(coupon_code)")],
        unique=True,
    )


def downgrade():
    op.drop_index("uq_discount_rules_coupon_code_lower", table_name="discount_rules")
