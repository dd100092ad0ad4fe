"""Create classifier tables.

Categories, rules, merchant memory, external taxonomy mappings, feedback,
training history and the classified records (transactions, purchased items).

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def _classified_columns() -> list[sa.Column]:
    return [
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("confidence", sa.Integer(), server_default="0", nullable=False),
        sa.Column("classification_method", sa.String(50), nullable=True),
        sa.Column("classification_reasoning", sa.Text(), nullable=True),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("classification_rules.id"), nullable=True),
        sa.Column("verified", sa.Boolean(), server_default="false", nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("attributes", sa.JSON(), server_default="{}", nullable=False),
        *_timestamps(),
    )
    op.create_index("uq_categories_name_lower", "categories", [sa.text("lower(name)")], unique=True)

    op.create_table(
        "classification_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("pattern", sa.String(500), nullable=False),
        sa.Column("match_type", sa.String(20), server_default="partial", nullable=False),
        sa.Column("scope", sa.String(20), server_default="transaction", nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("source", sa.String(20), server_default="user", nullable=False),
        sa.Column("usage_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("correct_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("incorrect_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("accuracy_rate", sa.Float(), server_default="1.0", nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_classification_rules_scope_enabled", "classification_rules", ["scope", "enabled"])
    op.create_index("ix_classification_rules_external_id", "classification_rules", ["external_id"])

    op.create_table(
        "merchant_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("merchant_key", sa.String(500), nullable=False, unique=True),
        sa.Column("merchant_name", sa.String(500), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("usage_count", sa.Integer(), server_default="1", nullable=False),
        sa.Column("correct_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("incorrect_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("accuracy_rate", sa.Float(), server_default="1.0", nullable=False),
        sa.Column("last_used", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "external_category_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_category", sa.String(255), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("user_category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("confidence", sa.Integer(), server_default="50", nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("external_category", "source", name="uq_external_mappings_category_source"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("merchant_name", sa.String(500), nullable=True),
        sa.Column("description", sa.String(500), server_default="", nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("legacy_category", sa.JSON(), nullable=True),
        sa.Column("taxonomy_primary", sa.String(100), nullable=True),
        sa.Column("taxonomy_detailed", sa.String(100), nullable=True),
        sa.Column("taxonomy_confidence_level", sa.String(20), nullable=True),
        *_classified_columns(),
        *_timestamps(),
    )
    op.create_index("ix_transactions_category_id", "transactions", ["category_id"])

    op.create_table(
        "purchased_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("title", sa.String(1000), nullable=False),
        sa.Column("foreign_category", sa.String(255), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), server_default="0", nullable=False),
        *_classified_columns(),
        *_timestamps(),
    )
    op.create_index("ix_purchased_items_category_id", "purchased_items", ["category_id"])
    op.create_index("ix_purchased_items_external_id", "purchased_items", ["external_id"])

    op.create_table(
        "classification_feedback",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(100), nullable=False),
        sa.Column("item_type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.Column("merchant", sa.String(500), nullable=True),
        sa.Column("suggested_category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("actual_category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("method", sa.String(50), nullable=True),
        sa.Column("confidence", sa.Integer(), server_default="0", nullable=False),
        sa.Column("processed", sa.Boolean(), server_default="false", nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_classification_feedback_item_id", "classification_feedback", ["item_id"])
    op.create_index("ix_classification_feedback_processed", "classification_feedback", ["processed"])

    op.create_table(
        "training_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trigger", sa.String(50), nullable=False),
        sa.Column("feedback_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("rules_generated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("duration_ms", sa.Integer(), server_default="0", nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("training_runs")
    op.drop_index("ix_classification_feedback_processed")
    op.drop_index("ix_classification_feedback_item_id")
    op.drop_table("classification_feedback")
    op.drop_index("ix_purchased_items_external_id")
    op.drop_index("ix_purchased_items_category_id")
    op.drop_table("purchased_items")
    op.drop_index("ix_transactions_category_id")
    op.drop_table("transactions")
    op.drop_table("external_category_mappings")
    op.drop_table("merchant_mappings")
    op.drop_index("ix_classification_rules_external_id")
    op.drop_index("idx_classification_rules_scope_enabled")
    op.drop_table("classification_rules")
    op.drop_index("uq_categories_name_lower")
    op.drop_table("categories")
