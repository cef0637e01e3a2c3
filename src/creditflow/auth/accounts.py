"""Account administration: removing a user and everything they own."""

from sqlalchemy import delete, update

from creditflow.auth.models import PasskeyCredential, UserAccount
from creditflow.credits.models import CreditTransaction, PurchasedItem
from creditflow.errors import ForbiddenError, NotFoundError
from creditflow.logging_config import get_logger
from creditflow.referral.models import ReferralInvitation
from creditflow.sessions.store import SessionStore, session_store
from creditflow.storage.db import Database, db

logger = get_logger(__name__)


class AccountService:
    """Admin operations on user accounts."""

    def __init__(self, database: Database | None = None, sessions: SessionStore | None = None):
        self.db = database or db
        self.sessions = sessions or session_store
        self.logger = get_logger(__name__)

    def delete_user(self, user_id: int, acting_user_id: int) -> None:
        """Delete a user with their ledger, purchases and sent invitations.

        Sessions are revoked first so the account cannot act while it is
        being removed. Users the account referred keep their accounts; only
        their referral link is cleared.

        Args:
            user_id: Account to delete
            acting_user_id: Admin performing the deletion

        Raises:
            ForbiddenError: If an admin tries to delete their own account
            NotFoundError: If the user does not exist
        """
        if user_id == acting_user_id:
            raise ForbiddenError("You cannot delete your own account.")

        with self.db.session() as session:
            if session.get(UserAccount, user_id) is None:
                raise NotFoundError("User not found")

        revoked = self.sessions.delete_all_sessions_of_user(user_id)

        with self.db.session() as session:
            session.execute(delete(CreditTransaction).where(CreditTransaction.user_id == user_id))
            session.execute(delete(PurchasedItem).where(PurchasedItem.user_id == user_id))
            session.execute(delete(ReferralInvitation).where(ReferralInvitation.inviter_user_id == user_id))
            session.execute(delete(PasskeyCredential).where(PasskeyCredential.user_id == user_id))
            session.execute(
                update(UserAccount)
                .where(UserAccount.referral_user_id == user_id)
                .values(referral_user_id=None)
            )
            session.execute(delete(UserAccount).where(UserAccount.id == user_id))

        self.logger.warning(
            "user_deleted",
            user_id=user_id,
            deleted_by=acting_user_id,
            sessions_revoked=revoked,
        )


account_service = AccountService()
