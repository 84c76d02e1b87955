"""Create points ledger, referral and reward tables.

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ledger_entry_type = sa.Enum("earned", "spent", "bonus", "adjustment", name="loyalty_ledger_entry_type")
ledger_reason = sa.Enum(
    "referral-completion",
    "redemption",
    "redemption-reversal",
    "manual-adjustment",
    "subscription-renewal",
    name="loyalty_ledger_reason",
)
referral_status = sa.Enum("pending", "completed", "cancelled", name="referral_status")
reward_category = sa.Enum("discount", "product", "service", "premium", name="reward_category")
redemption_status = sa.Enum(
    "pending", "approved", "used", "expired", "cancelled", name="reward_redemption_status"
)


def upgrade() -> None:
    op.create_table(
        "points_accounts",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(length=32), nullable=True, unique=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        sa.CheckConstraint("current_points >= 0", name="ck_points_accounts_non_negative"),
        sa.CheckConstraint("current_points <= lifetime_earned", name="ck_points_accounts_within_lifetime"),
    )

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("points_accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", ledger_entry_type, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", ledger_reason, nullable=False),
        sa.Column("reference_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("reason", "reference_id", name="uq_loyalty_ledger_reason_reference"),
    )
    op.create_index("ix_loyalty_ledger_entries_account_id", "loyalty_ledger_entries", ["account_id"])
    op.create_index("ix_loyalty_ledger_entries_user_id", "loyalty_ledger_entries", ["user_id"])
    op.create_index("ix_loyalty_ledger_entries_created_at", "loyalty_ledger_entries", ["created_at"])

    op.create_table(
        "referrals",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_user_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("referred_user_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("referred_email", sa.String(), nullable=False),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("reward_points", sa.Integer(), nullable=False),
        sa.Column("reward_given", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subscription_plan", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("referrer_user_id", "referred_email", name="uq_referrals_referrer_email"),
    )
    op.create_index("ix_referrals_referrer_user_id", "referrals", ["referrer_user_id"])
    op.create_index("ix_referrals_referred_user_id", "referrals", ["referred_user_id"])
    op.create_index("ix_referrals_created_at", "referrals", ["created_at"])

    op.create_table(
        "rewards",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("category", reward_category, nullable=False),
        sa.Column("value", sa.String(), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("terms", sa.JSON(), nullable=False),
        sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("points_cost > 0", name="ck_rewards_points_cost_positive"),
        sa.CheckConstraint("stock IS NULL OR stock >= 0", name="ck_rewards_stock_non_negative"),
    )

    op.create_table(
        "reward_redemptions",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", sa.dialects.postgresql.UUID(as_uuid=True), sa.ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reward_title", sa.String(), nullable=False),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="pending"),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("stock_reserved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("code", name="uq_reward_redemptions_code"),
        sa.UniqueConstraint("user_id", "request_id", name="uq_reward_redemptions_user_request"),
    )
    op.create_index("ix_reward_redemptions_user_id", "reward_redemptions", ["user_id"])
    op.create_index("ix_reward_redemptions_reward_id", "reward_redemptions", ["reward_id"])
    op.create_index("ix_reward_redemptions_redeemed_at", "reward_redemptions", ["redeemed_at"])
    op.create_index("ix_reward_redemptions_expires_at", "reward_redemptions", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_reward_redemptions_expires_at", table_name="reward_redemptions")
    op.drop_index("ix_reward_redemptions_redeemed_at", table_name="reward_redemptions")
    op.drop_index("ix_reward_redemptions_reward_id", table_name="reward_redemptions")
    op.drop_index("ix_reward_redemptions_user_id", table_name="reward_redemptions")
    op.drop_table("reward_redemptions")
    op.drop_table("rewards")
    op.drop_index("ix_referrals_created_at", table_name="referrals")
    op.drop_index("ix_referrals_referred_user_id", table_name="referrals")
    op.drop_index("ix_referrals_referrer_user_id", table_name="referrals")
    op.drop_table("referrals")
    op.drop_index("ix_loyalty_ledger_entries_created_at", table_name="loyalty_ledger_entries")
    op.drop_index("ix_loyalty_ledger_entries_user_id", table_name="loyalty_ledger_entries")
    op.drop_index("ix_loyalty_ledger_entries_account_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_table("points_accounts")

    bind = op.get_bind()
    for enum_type in (redemption_status, reward_category, referral_status, ledger_reason, ledger_entry_type):
        enum_type.drop(bind, checkfirst=True)
