"""Account creation flows: email sign-up, invitation completion, Google SSO.

Every path that creates an account grants the sign-up bonus (keyed per user)
and gives pending referral invitations a chance to credit the inviter.
"""

from datetime import datetime

from sqlalchemy import func

from creditflow.auth.local import LocalAuthService, auth_service as default_auth_service
from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import AppSettingsService, CreditSettings, app_settings_service
from creditflow.credits.service import CreditService, credit_service as default_credit_service
from creditflow.errors import ConflictError, PreconditionFailedError
from creditflow.logging_config import get_logger
from creditflow.referral.models import ReferralInvitation, ReferralInvitationStatus
from creditflow.referral.service import ReferralService, referral_service as default_referral_service
from creditflow.storage.db import Database, db

logger = get_logger(__name__)


class SignupService:
    """Creates accounts and applies sign-up credits."""

    def __init__(
        self,
        database: Database | None = None,
        auth_service: LocalAuthService | None = None,
        credit_service: CreditService | None = None,
        referral_service: ReferralService | None = None,
        settings_service: AppSettingsService | None = None,
    ):
        self.db = database or db
        self.auth_service = auth_service or default_auth_service
        self.credit_service = credit_service or default_credit_service
        self.referral_service = referral_service or default_referral_service
        self.settings_service = settings_service or app_settings_service
        self.logger = get_logger(__name__)

    def _find_by_email(self, session, email: str) -> UserAccount | None:
        return session.query(UserAccount).filter(func.lower(UserAccount.email) == email).first()

    def _after_create(
        self,
        user: UserAccount,
        credit_settings: CreditSettings,
        referral_token: str | None,
    ) -> None:
        self.credit_service.grant_signup_bonus(user.id, credit_settings)
        self.referral_service.consume_referral_on_signup(
            user.email, user.id, credit_settings, token=referral_token
        )

    def sign_up(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
        referral_token: str | None = None,
    ) -> UserAccount:
        """Register a new email/password account.

        Args:
            email: User email
            password: Plain password
            first_name: Optional first name
            last_name: Optional last name
            referral_token: Invitation token carried through sign-up, if any

        Returns:
            Created user account

        Raises:
            ConflictError: If the email is already registered
        """
        email = email.strip().lower()
        credit_settings = self.settings_service.snapshot()

        with self.db.session() as session:
            if self._find_by_email(session, email):
                raise ConflictError("Email already taken")

            user = UserAccount(
                email=email,
                first_name=first_name,
                last_name=last_name,
                password_hash=self.auth_service.hash_password(password),
                last_credit_refresh_at=datetime.utcnow(),
            )
            session.add(user)

        self.logger.info("user_created", user_id=user.id, method="password")
        self._after_create(user, credit_settings, referral_token)
        return self.auth_service.get_user_by_id(user.id)

    def complete_invite(
        self,
        token: str,
        email: str,
        first_name: str,
        last_name: str | None,
        password: str,
        now: datetime | None = None,
    ) -> UserAccount:
        """Finish sign-up from an invitation link.

        The email counts as verified. An existing account for the invited
        address is updated instead of duplicated.

        Raises:
            PreconditionFailedError: Invitation unknown, used, expired or
                issued for a different email
        """
        email = email.strip().lower()
        now = now or datetime.utcnow()
        credit_settings = self.settings_service.snapshot()

        with self.db.session() as session:
            invitation = session.query(ReferralInvitation).filter(
                ReferralInvitation.token == token,
                ReferralInvitation.status == ReferralInvitationStatus.PENDING,
            ).first()

        if not invitation or invitation.invited_email.lower() != email:
            raise PreconditionFailedError("Invalid or mismatched invitation")
        if invitation.is_expired(now):
            raise PreconditionFailedError("Invitation expired")

        password_hash = self.auth_service.hash_password(password)

        with self.db.session() as session:
            user = self._find_by_email(session, email)
            if user is None:
                user = UserAccount(
                    email=email,
                    first_name=first_name,
                    last_name=last_name or None,
                    password_hash=password_hash,
                    email_verified_at=now,
                    last_credit_refresh_at=now,
                )
                session.add(user)
            else:
                user.first_name = first_name
                user.last_name = last_name or None
                user.password_hash = password_hash
                user.email_verified_at = user.email_verified_at or now
                user.updated_at = now
            if user.referral_user_id is None and user.id != invitation.inviter_user_id:
                user.referral_user_id = invitation.inviter_user_id

        self.credit_service.grant_signup_bonus(user.id, credit_settings)
        self.referral_service.grant_inviter_bonus(invitation, credit_settings, invitee_email=email)

        self.logger.info("invite_completed", user_id=user.id, invitation_id=invitation.id)
        return self.auth_service.get_user_by_id(user.id)

    def upsert_google_user(
        self,
        google_account_id: str,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
        referral_token: str | None = None,
    ) -> tuple[UserAccount, bool]:
        """Find or create the account behind a Google sign-in.

        Returns:
            (user, is_new)
        """
        email = email.strip().lower()
        credit_settings = self.settings_service.snapshot()

        with self.db.session() as session:
            user = session.query(UserAccount).filter(
                UserAccount.google_account_id == google_account_id
            ).first()
            is_new = False

            if user is None:
                user = self._find_by_email(session, email)
                if user is not None:
                    # Link Google to the existing email account
                    user.google_account_id = google_account_id
                    user.first_name = user.first_name or first_name
                    user.last_name = user.last_name or last_name
                    user.email_verified_at = user.email_verified_at or datetime.utcnow()
                    user.updated_at = datetime.utcnow()
                else:
                    user = UserAccount(
                        email=email,
                        first_name=first_name,
                        last_name=last_name,
                        google_account_id=google_account_id,
                        email_verified_at=datetime.utcnow(),
                        last_credit_refresh_at=datetime.utcnow(),
                    )
                    session.add(user)
                    is_new = True

        if is_new:
            self.logger.info("user_created", user_id=user.id, method="google")
            self.credit_service.grant_signup_bonus(user.id, credit_settings)

        # Idempotent for returning users: only a PENDING invitation applies
        self.referral_service.consume_referral_on_signup(
            user.email, user.id, credit_settings, token=referral_token
        )
        return self.auth_service.get_user_by_id(user.id), is_new


# Singleton instance
signup_service = SignupService()
