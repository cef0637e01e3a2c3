"""Referral service for invitations and the inviter bonus."""

import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import CreditSettings
from creditflow.credits.models import CreditTransaction, CreditTransactionType
from creditflow.credits.service import CreditService, credit_service as default_credit_service
from creditflow.errors import ConflictError, NotFoundError, PreconditionFailedError
from creditflow.logging_config import get_logger
from creditflow.referral.models import ReferralInvitation, ReferralInvitationStatus
from creditflow.settings import settings
from creditflow.storage.db import Database, db

logger = get_logger(__name__)


def referral_bonus_key(invitation_id: int) -> str:
    return f"referral_bonus_{invitation_id}"


def _generate_token() -> str:
    """Generate an unguessable invitation token."""
    return secrets.token_urlsafe(32)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class ReferralService:
    """Service for managing referral invitations and bonuses."""

    def __init__(
        self,
        database: Database | None = None,
        credit_service: CreditService | None = None,
    ):
        """Initialize referral service."""
        self.db = database or db
        self.credit_service = credit_service or default_credit_service
        self.logger = get_logger(__name__)

    def create_invitation(
        self,
        inviter_user_id: int,
        email: str,
        credit_settings: CreditSettings,
        now: datetime | None = None,
    ) -> ReferralInvitation:
        """Create a PENDING invitation for an email address.

        Args:
            inviter_user_id: User sending the invitation
            email: Address to invite
            credit_settings: Settings snapshot (bonus recorded on the invitation)

        Returns:
            ReferralInvitation

        Raises:
            ConflictError: If inviting oneself or an already registered email
        """
        email = _normalize_email(email)
        now = now or datetime.utcnow()

        with self.db.session() as session:
            inviter = session.get(UserAccount, inviter_user_id)
            if not inviter:
                raise NotFoundError("Inviter not found")

            if _normalize_email(inviter.email) == email:
                raise ConflictError("You cannot invite yourself")

            registered = session.query(UserAccount).filter(
                func.lower(UserAccount.email) == email
            ).first()
            if registered:
                raise ConflictError("A user with this email is already registered")

            expires_at = None
            if settings.referral_invitation_ttl_days:
                expires_at = now + timedelta(days=settings.referral_invitation_ttl_days)

            invitation = ReferralInvitation(
                token=_generate_token(),
                inviter_user_id=inviter_user_id,
                invited_email=email,
                status=ReferralInvitationStatus.PENDING,
                expires_at=expires_at,
                credits_awarded=credit_settings.referral_bonus,
            )
            session.add(invitation)

        self.logger.info(
            "referral_invitation_created",
            inviter_user_id=inviter_user_id,
            invitation_id=invitation.id,
        )
        return invitation

    def get_invitation(self, invitation_id: int) -> ReferralInvitation | None:
        with self.db.session() as session:
            return session.get(ReferralInvitation, invitation_id)

    def validate_token(self, token: str, now: datetime | None = None) -> ReferralInvitation | None:
        """Return the invitation if it can still be accepted, None otherwise."""
        if not token:
            return None

        with self.db.session() as session:
            invitation = session.query(ReferralInvitation).filter(
                ReferralInvitation.token == token.strip()
            ).first()

        if not invitation:
            return None
        if invitation.status != ReferralInvitationStatus.PENDING or invitation.is_expired(now):
            return None
        return invitation

    def grant_inviter_bonus(
        self,
        invitation: ReferralInvitation,
        credit_settings: CreditSettings,
        invitee_email: str | None = None,
    ) -> CreditTransaction | None:
        """Mark the invitation accepted and credit the inviter, exactly once.

        The bonus entry, the aggregate increment and the status change commit
        together. The entry is keyed ``referral_bonus_<invitationId>``, so a
        repeated or concurrent acceptance hits the unique key and is a no-op.

        Returns:
            The bonus entry, or None when already granted or the bonus is zero
        """
        bonus = credit_settings.referral_bonus
        email = invitee_email or invitation.invited_email

        try:
            with self.db.session() as session:
                current = session.get(ReferralInvitation, invitation.id)
                if not current:
                    raise NotFoundError("Invitation not found")

                current.status = ReferralInvitationStatus.ACCEPTED
                current.credits_awarded = bonus
                current.updated_at = datetime.utcnow()

                entry = None
                if bonus > 0:
                    entry = self.credit_service.grant_in_session(
                        session,
                        user_id=current.inviter_user_id,
                        amount=bonus,
                        description=f"Referral bonus for inviting {email}",
                        idempotency_key=referral_bonus_key(current.id),
                        type=CreditTransactionType.PURCHASE,
                    )
        except IntegrityError:
            self.logger.info("referral_bonus_already_granted", invitation_id=invitation.id)
            return None

        self.logger.info(
            "referral_bonus_granted",
            invitation_id=invitation.id,
            inviter_user_id=invitation.inviter_user_id,
            bonus=bonus,
        )
        if entry is not None:
            self.credit_service.notify_balance_change(invitation.inviter_user_id)
        return entry

    def _link_invitee(self, invitation: ReferralInvitation, user_id: int, verify_email: bool) -> UserAccount:
        with self.db.session() as session:
            user = session.get(UserAccount, user_id)
            if not user:
                raise NotFoundError("User not found")
            if user.referral_user_id is None:
                user.referral_user_id = invitation.inviter_user_id
            if verify_email and user.email_verified_at is None:
                user.email_verified_at = datetime.utcnow()
            user.updated_at = datetime.utcnow()
            return user

    def accept_invitation(
        self,
        token: str,
        new_user_id: int,
        credit_settings: CreditSettings,
        now: datetime | None = None,
    ) -> ReferralInvitation:
        """Accept an invitation on behalf of a signed-in user.

        The invitee gets no referral bonus here; only the inviter is credited.

        Raises:
            NotFoundError: Unknown token
            PreconditionFailedError: Invitation already used, expired, or
                issued by the accepting user
        """
        with self.db.session() as session:
            invitation = session.query(ReferralInvitation).filter(
                ReferralInvitation.token == token
            ).first()

        if not invitation:
            raise NotFoundError("Invalid invitation token")
        if invitation.status != ReferralInvitationStatus.PENDING:
            raise PreconditionFailedError("Invitation has already been used or expired")
        if invitation.is_expired(now):
            raise PreconditionFailedError("Invitation has expired")
        if invitation.inviter_user_id == new_user_id:
            raise PreconditionFailedError("You cannot accept your own invitation")

        user = self._link_invitee(invitation, new_user_id, verify_email=False)
        self.grant_inviter_bonus(invitation, credit_settings, invitee_email=user.email)

        self.logger.info("referral_invitation_accepted", invitation_id=invitation.id, user_id=new_user_id)
        return self.get_invitation(invitation.id)

    def consume_referral_on_signup(
        self,
        email: str,
        user_id: int,
        credit_settings: CreditSettings,
        token: str | None = None,
        now: datetime | None = None,
    ) -> ReferralInvitation | None:
        """Apply a pending invitation after a sign-up, silently.

        Looks the invitation up by token and email when a token is given,
        otherwise takes the newest PENDING invitation for the email. Missing,
        used, expired or self-issued invitations are ignored.

        Returns:
            The accepted invitation, or None if nothing applied
        """
        email = _normalize_email(email)

        with self.db.session() as session:
            query = session.query(ReferralInvitation).filter(ReferralInvitation.invited_email == email)
            if token:
                invitation = query.filter(ReferralInvitation.token == token).first()
            else:
                invitation = query.filter(
                    ReferralInvitation.status == ReferralInvitationStatus.PENDING
                ).order_by(
                    ReferralInvitation.created_at.desc(),
                    ReferralInvitation.id.desc(),
                ).first()

        if not invitation:
            return None
        if invitation.status != ReferralInvitationStatus.PENDING or invitation.is_expired(now):
            self.logger.info("referral_invitation_not_applicable", invitation_id=invitation.id, status=invitation.status.value)
            return None
        if invitation.inviter_user_id == user_id:
            return None

        self._link_invitee(invitation, user_id, verify_email=True)
        self.grant_inviter_bonus(invitation, credit_settings, invitee_email=email)

        self.logger.info("referral_consumed_on_signup", invitation_id=invitation.id, user_id=user_id)
        return self.get_invitation(invitation.id)

    def expire_stale_invitations(self, now: datetime | None = None) -> int:
        """Move overdue PENDING invitations to EXPIRED.

        Returns:
            Number of invitations expired
        """
        now = now or datetime.utcnow()
        with self.db.session() as session:
            count = session.query(ReferralInvitation).filter(
                ReferralInvitation.status == ReferralInvitationStatus.PENDING,
                ReferralInvitation.expires_at.isnot(None),
                ReferralInvitation.expires_at < now,
            ).update(
                {"status": ReferralInvitationStatus.EXPIRED, "updated_at": now},
                synchronize_session=False,
            )

        if count:
            self.logger.info("referral_invitations_expired", count=count)
        return count

    def get_referral_stats(self, user_id: int) -> dict[str, Any]:
        """Get referral statistics for a user.

        Args:
            user_id: Inviter user ID

        Returns:
            Dict with invitation counts by status and credits earned
        """
        with self.db.session() as session:
            rows = session.query(
                ReferralInvitation.status,
                func.count(ReferralInvitation.id),
            ).filter(
                ReferralInvitation.inviter_user_id == user_id
            ).group_by(ReferralInvitation.status).all()

            credits_earned = session.query(
                func.coalesce(func.sum(CreditTransaction.amount), 0)
            ).filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.idempotency_key.like("referral_bonus_%"),
            ).scalar()

            referred_users = session.query(func.count(UserAccount.id)).filter(
                UserAccount.referral_user_id == user_id
            ).scalar()

        counts = {status.value.lower(): 0 for status in ReferralInvitationStatus}
        for status, count in rows:
            counts[status.value.lower()] = count

        return {
            "invitations_sent": sum(counts.values()),
            **counts,
            "referred_users": referred_users or 0,
            "credits_earned": int(credits_earned or 0),
        }


# Singleton instance
referral_service = ReferralService()
