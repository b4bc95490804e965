"""Create the partition cache tables.

Revision ID: 001_partition_cache
Revises:
Create Date: 2026-10-19

Creates the four relations held in every partition's SQLite file:
- products: Catalog items assigned to the partition's city
- deals: CRM deals referencing cached products
- contacts: CRM contacts
- product_deal_links: Deal <-> product association, unique per pair

No foreign keys: deals.contact_id is a weak reference. Links are removed
in the same transaction as the deal or product they reference.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_partition_cache"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── products table ──────────────────────────────────────────────────

    op.create_table(
        "products",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("section_id", sa.Text(), nullable=True),
        sa.Column("offer_ids", sa.JSON(), server_default=sa.text("'[]'"), nullable=False),
    )

    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("contact_id", sa.Text(), nullable=True),
        sa.Column("begin_date", sa.Text(), nullable=True),
        sa.Column("close_date", sa.Text(), nullable=True),
        sa.Column("wedding_date", sa.Text(), nullable=True),
        sa.Column("stage_id", sa.Text(), nullable=True),
        sa.Column("prepayment", sa.Float(), nullable=True),
        sa.Column("postpayment", sa.Float(), nullable=True),
        sa.Column("opportunity", sa.Float(), nullable=True),
    )

    # ── contacts table ──────────────────────────────────────────────────

    op.create_table(
        "contacts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
    )

    # ── product_deal_links table ────────────────────────────────────────

    op.create_table(
        "product_deal_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Text(), nullable=False),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.UniqueConstraint("deal_id", "product_id", name="uq_link_deal_product"),
    )
    op.create_index(
        "ix_product_deal_links_deal_id", "product_deal_links", ["deal_id"]
    )
    op.create_index(
        "ix_product_deal_links_product_id", "product_deal_links", ["product_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_product_deal_links_product_id", table_name="product_deal_links")
    op.drop_index("ix_product_deal_links_deal_id", table_name="product_deal_links")
    op.drop_table("product_deal_links")
    op.drop_table("contacts")
    op.drop_table("deals")
    op.drop_table("products")
