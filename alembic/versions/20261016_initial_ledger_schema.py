"""Initial ledger schema

Revision ID: 001_initial_ledger
Revises:
Create Date: 2026-10-16

Creates:
- user_accounts with the credit aggregate and referral link
- passkey_credentials
- credit_transactions (ledger, unique idempotency_key)
- purchased_items (unique per user/type/item)
- app_settings
- referral_invitations
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_initial_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    """Create ledger, purchase, settings and invitation tables."""
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("role", sa.Enum("USER", "ADMIN", name="userrole"), nullable=False),
        sa.Column("email_verified_at", sa.DateTime(), nullable=True),
        sa.Column("google_account_id", sa.String(255), nullable=True),
        sa.Column("current_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_credit_refresh_at", sa.DateTime(), nullable=True),
        sa.Column("referral_user_id", sa.Integer(), sa.ForeignKey("user_accounts.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_user_accounts_email", "user_accounts", ["email"], unique=True)
    op.create_index("ix_user_accounts_google_account_id", "user_accounts", ["google_account_id"])
    op.create_index("ix_user_accounts_referral_user_id", "user_accounts", ["referral_user_id"])

    op.create_table(
        "passkey_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_accounts.id"), nullable=False),
        sa.Column("credential_id", sa.String(255), nullable=False, unique=True),
        sa.Column("credential_public_key", sa.String(255), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transports", sa.String(255), nullable=True),
        sa.Column("aaguid", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_passkey_credentials_user_id", "passkey_credentials", ["user_id"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_accounts.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("remaining_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "type",
            sa.Enum("PURCHASE", "USAGE", "MONTHLY_REFRESH", name="credittransactiontype"),
            nullable=False,
        ),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("expiration_date", sa.DateTime(), nullable=True),
        sa.Column("expiration_date_processed_at", sa.DateTime(), nullable=True),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        *_timestamps(),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_type", "credit_transactions", ["type"])
    op.create_index("ix_credit_transactions_expiration_date", "credit_transactions", ["expiration_date"])
    op.create_index("ix_credit_transactions_payment_intent_id", "credit_transactions", ["payment_intent_id"])
    op.create_index("ix_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"])

    op.create_table(
        "purchased_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_accounts.id"), nullable=False),
        sa.Column("item_type", sa.Enum("COMPONENT", name="purchasableitemtype"), nullable=False),
        sa.Column("item_id", sa.String(255), nullable=False),
        sa.Column("purchased_at", sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "item_type", "item_id", name="uq_purchased_items_user_item"),
    )
    op.create_index("ix_purchased_items_user_id", "purchased_items", ["user_id"])

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "referral_invitations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("token", sa.String(255), nullable=False),
        sa.Column("inviter_user_id", sa.Integer(), sa.ForeignKey("user_accounts.id"), nullable=False),
        sa.Column("invited_email", sa.String(255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACCEPTED", "EXPIRED", name="referralinvitationstatus"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("credits_awarded", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_referral_invitations_token", "referral_invitations", ["token"], unique=True)
    op.create_index("ix_referral_invitations_inviter_user_id", "referral_invitations", ["inviter_user_id"])
    op.create_index("ix_referral_invitations_invited_email", "referral_invitations", ["invited_email"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("referral_invitations")
    op.drop_table("app_settings")
    op.drop_table("purchased_items")
    op.drop_table("credit_transactions")
    op.drop_table("passkey_credentials")
    op.drop_table("user_accounts")
