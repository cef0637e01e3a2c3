"""User account models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creditflow.storage.models import Base, TimestampMixin


class UserRole(str, Enum):
    """Role definitions for application users."""
    USER = "user"
    ADMIN = "admin"


class UserAccount(TimestampMixin, Base):
    """User account with identity, profile and the credit aggregate.

    ``current_credits`` is a denormalized running total kept in step with the
    ledger through explicit increments, never recomputed on read.
    """
    __tablename__ = "user_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Auth
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), default=UserRole.USER, nullable=False)
    email_verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    google_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Credits
    current_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_credit_refresh_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Referral
    referral_user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("user_accounts.id"), nullable=True, index=True
    )

    passkeys: Mapped[list["PasskeyCredential"]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<UserAccount(id={self.id}, email={self.email}, credits={self.current_credits})>"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class PasskeyCredential(TimestampMixin, Base):
    """Stored WebAuthn credential. The ceremony itself lives in the WebAuthn library."""
    __tablename__ = "passkey_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_accounts.id"), nullable=False, index=True)
    credential_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    credential_public_key: Mapped[str] = mapped_column(String(255), nullable=False)
    counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transports: Mapped[str | None] = mapped_column(String(255), nullable=True)
    aaguid: Mapped[str | None] = mapped_column(String(255), nullable=True)

    user: Mapped[UserAccount] = relationship(back_populates="passkeys")


# Pydantic models for API


class User(BaseModel):
    """User data for API responses and session snapshots."""
    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole = UserRole.USER
    email_verified_at: datetime | None = None
    current_credits: int = 0
    last_credit_refresh_at: datetime | None = None
    referral_user_id: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UserCreate(BaseModel):
    """User sign-up request."""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str | None = None
    last_name: str | None = None
    referral_token: str | None = None


class CompleteInviteRequest(BaseModel):
    """Sign-up through an invitation link."""
    invitation: str = Field(..., min_length=10)
    email: EmailStr
    first_name: str = Field(..., min_length=1)
    last_name: str | None = None
    password: str = Field(..., min_length=8, max_length=128)


class TokenResponse(BaseModel):
    """Session token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: User
