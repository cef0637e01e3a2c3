"""Referral invitation model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.storage.models import Base, TimestampMixin


class ReferralInvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"


class ReferralInvitation(TimestampMixin, Base):
    """Invitation sent by a user to an email address.

    Transitions PENDING -> ACCEPTED at most once (or PENDING -> EXPIRED when
    the stale-invitation pass runs). The inviter bonus is guarded by the
    ledger idempotency key, not by this status.
    """
    __tablename__ = "referral_invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    inviter_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_accounts.id"), nullable=False, index=True)
    invited_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[ReferralInvitationStatus] = mapped_column(
        SQLEnum(ReferralInvitationStatus), default=ReferralInvitationStatus.PENDING, nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    credits_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<ReferralInvitation(id={self.id}, email={self.invited_email}, status={self.status})>"

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or datetime.utcnow())
