"""Credit ledger, purchased items and runtime settings tables."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.storage.models import Base, TimestampMixin


class CreditTransactionType(str, Enum):
    """Ledger entry types."""
    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    MONTHLY_REFRESH = "MONTHLY_REFRESH"


class CreditTransaction(TimestampMixin, Base):
    """Ledger entry.

    ``amount`` is fixed at creation (positive grants, negative debits). Only
    ``remaining_amount`` and ``expiration_date_processed_at`` change later.
    ``idempotency_key`` carries the deterministic key of a business event
    (e.g. ``signup_42``); its unique constraint makes re-running the event a
    storage-level conflict instead of a second grant.
    """
    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_accounts.id"), nullable=False, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    type: Mapped[CreditTransactionType] = mapped_column(SQLEnum(CreditTransactionType), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)

    # Expiration (NULL = never expires)
    expiration_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    expiration_date_processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    __table_args__ = (
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, user={self.user_id}, type={self.type}, "
            f"amount={self.amount}, remaining={self.remaining_amount})>"
        )


class PurchasableItemType(str, Enum):
    COMPONENT = "COMPONENT"


class PurchasedItem(TimestampMixin, Base):
    """One-time purchase of a catalog entry. Never mutated or deleted."""
    __tablename__ = "purchased_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_accounts.id"), nullable=False, index=True)
    item_type: Mapped[PurchasableItemType] = mapped_column(SQLEnum(PurchasableItemType), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchased_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "item_type", "item_id", name="uq_purchased_items_user_item"),
    )

    @property
    def key(self) -> str:
        return f"{self.item_type.value}:{self.item_id}"


class AppSetting(TimestampMixin, Base):
    """Flat key -> string value row for admin-tunable business parameters."""
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<AppSetting({self.key}={self.value!r})>"
