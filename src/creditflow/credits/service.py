"""Credit ledger and balance aggregate.

The ledger (``credit_transactions``) is the source of truth; the
``current_credits`` column on the user is a running total moved by explicit
SQL increments. Writes that belong to one business step (ledger rows plus
the aggregate increment) share a transaction, so the two can only drift when
a step is interrupted between transactions (e.g. between the sweep and the
grant of a monthly refresh). ``reconcile_balance`` recomputes the aggregate
from the ledger when that happens.

Operations:
- Grant credits (signup bonus, referral bonus, package purchase)
- Consume credits oldest-first
- Sweep expired entries
- Monthly free-credit refresh
"""

from datetime import datetime
from typing import Any, Callable

from dateutil.relativedelta import relativedelta
from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import CreditSettings
from creditflow.credits.models import CreditTransaction, CreditTransactionType, PurchasedItem
from creditflow.errors import InsufficientCreditsError, NotFoundError
from creditflow.logging_config import get_logger
from creditflow.settings import settings
from creditflow.storage.db import Database, db

logger = get_logger(__name__)

MAX_TRANSACTIONS_PER_PAGE = 10


def is_refresh_due(last_refresh_at: datetime | None, now: datetime) -> bool:
    """A monthly refresh is due one calendar month after the last one."""
    if last_refresh_at is None:
        return True
    return now >= last_refresh_at + relativedelta(months=1)


def signup_bonus_key(user_id: int) -> str:
    return f"signup_{user_id}"


def purchase_key(payment_intent_id: str) -> str:
    return f"purchase_{payment_intent_id}"


class CreditService:
    """Service for managing user credits."""

    # Credit packages for purchase (price in EUR)
    CREDIT_PACKAGES = {
        "package-1": {"credits": 500, "price_eur": 5},
        "package-2": {"credits": 1200, "price_eur": 10},
        "package-3": {"credits": 3000, "price_eur": 20},
    }

    def __init__(
        self,
        database: Database | None = None,
        on_balance_change: Callable[[int], None] | None = None,
    ):
        """Initialize credit service.

        Args:
            database: Database to use (defaults to the global one)
            on_balance_change: Called with the user id after every committed
                balance change; used to refresh cached session snapshots
        """
        self.db = database or db
        self.on_balance_change = on_balance_change
        self.logger = get_logger(__name__)

    # ==================== AGGREGATE ====================

    def _increment(self, session: Session, user_id: int, delta: int) -> int:
        """Add delta to the aggregate with a single SQL expression."""
        result = session.execute(
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(
                current_credits=func.coalesce(UserAccount.current_credits, 0) + delta,
                updated_at=datetime.utcnow(),
            )
        )
        return result.rowcount

    def notify_balance_change(self, user_id: int) -> None:
        if self.on_balance_change is None:
            return
        try:
            self.on_balance_change(user_id)
        except Exception as e:
            # Cached sessions stay stale until their next validation re-reads the row
            self.logger.warning("session_refresh_failed", user_id=user_id, error=str(e))

    def apply_delta(self, user_id: int, delta: int) -> None:
        """Add delta (positive or negative) to the user's aggregate.

        Raises:
            NotFoundError: If the user does not exist
        """
        with self.db.session() as session:
            if self._increment(session, user_id, delta) == 0:
                raise NotFoundError("User not found")

        self.logger.info("credits_delta_applied", user_id=user_id, delta=delta)
        self.notify_balance_change(user_id)

    def get_balance(self, user_id: int) -> int:
        """Get user's credit balance.

        Raises:
            NotFoundError: If the user does not exist
        """
        with self.db.session() as session:
            user = session.get(UserAccount, user_id)
            if not user:
                raise NotFoundError("User not found")
            return user.current_credits or 0

    def has_enough_credits(self, user_id: int, required: int) -> bool:
        with self.db.session() as session:
            user = session.get(UserAccount, user_id)
            if not user:
                return False
            return (user.current_credits or 0) >= required

    def reconcile_balance(self, user_id: int, fix: bool = False) -> int:
        """Compare the aggregate with the ledger.

        Args:
            user_id: User ID
            fix: Overwrite the aggregate with the ledger sum when they differ

        Returns:
            Drift (aggregate minus ledger sum); 0 when consistent
        """
        with self.db.session() as session:
            user = session.get(UserAccount, user_id)
            if not user:
                raise NotFoundError("User not found")

            ledger_sum = session.query(
                func.coalesce(func.sum(CreditTransaction.remaining_amount), 0)
            ).filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.expiration_date_processed_at.is_(None),
            ).scalar()

            drift = (user.current_credits or 0) - int(ledger_sum)
            if drift and fix:
                user.current_credits = int(ledger_sum)
                user.updated_at = datetime.utcnow()

        if drift:
            self.logger.warning("credit_balance_drift", user_id=user_id, drift=drift, fixed=fix)
            if fix:
                self.notify_balance_change(user_id)
        return drift

    # ==================== LEDGER ====================

    def _add_entry(
        self,
        session: Session,
        user_id: int,
        amount: int,
        type: CreditTransactionType,
        description: str,
        remaining_amount: int | None = None,
        expiration_date: datetime | None = None,
        payment_intent_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user_id,
            amount=amount,
            remaining_amount=amount if remaining_amount is None else remaining_amount,
            type=type,
            description=description[:255],
            expiration_date=expiration_date,
            payment_intent_id=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        session.add(entry)
        return entry

    def log_transaction(
        self,
        user_id: int,
        amount: int,
        type: CreditTransactionType,
        description: str,
        expiration_date: datetime | None = None,
        payment_intent_id: str | None = None,
    ) -> CreditTransaction:
        """Insert a ledger entry with remaining_amount = amount.

        The aggregate is not touched; pair with ``apply_delta`` or use
        ``grant_credits`` to do both at once.
        """
        with self.db.session() as session:
            entry = self._add_entry(
                session,
                user_id=user_id,
                amount=amount,
                type=type,
                description=description,
                expiration_date=expiration_date,
                payment_intent_id=payment_intent_id,
            )
        return entry

    def grant_in_session(
        self,
        session: Session,
        user_id: int,
        amount: int,
        description: str,
        idempotency_key: str | None = None,
        type: CreditTransactionType = CreditTransactionType.PURCHASE,
        expiration_date: datetime | None = None,
        payment_intent_id: str | None = None,
    ) -> CreditTransaction:
        """Insert a grant entry and bump the aggregate inside the caller's transaction.

        Raises:
            IntegrityError: If idempotency_key was already used
        """
        entry = self._add_entry(
            session,
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            expiration_date=expiration_date,
            payment_intent_id=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        # Ledger row first: a duplicate key fails here, before the aggregate moves
        session.flush()
        self._increment(session, user_id, amount)
        return entry

    def grant_credits(
        self,
        user_id: int,
        amount: int,
        description: str,
        idempotency_key: str | None = None,
        type: CreditTransactionType = CreditTransactionType.PURCHASE,
        expiration_date: datetime | None = None,
        payment_intent_id: str | None = None,
    ) -> CreditTransaction | None:
        """Grant credits at most once per idempotency key.

        Args:
            user_id: User ID
            amount: Amount to add (positive)
            description: Ledger description
            idempotency_key: Deterministic key of the business event
            type: Entry type
            expiration_date: Optional expiration (None = never expires)
            payment_intent_id: Optional payment reference

        Returns:
            The new entry, or None if the key was already granted
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        try:
            with self.db.session() as session:
                if session.get(UserAccount, user_id) is None:
                    raise NotFoundError("User not found")
                entry = self.grant_in_session(
                    session,
                    user_id=user_id,
                    amount=amount,
                    description=description,
                    idempotency_key=idempotency_key,
                    type=type,
                    expiration_date=expiration_date,
                    payment_intent_id=payment_intent_id,
                )
        except IntegrityError:
            if idempotency_key is None:
                raise
            self.logger.info("credit_grant_already_applied", user_id=user_id, idempotency_key=idempotency_key)
            return None

        self.logger.info(
            "credits_granted",
            user_id=user_id,
            amount=amount,
            type=type.value,
            idempotency_key=idempotency_key,
            expiration_date=expiration_date.isoformat() if expiration_date else None,
        )
        self.notify_balance_change(user_id)
        return entry

    def grant_signup_bonus(self, user_id: int, credit_settings: CreditSettings) -> CreditTransaction | None:
        """Grant the configured sign-up bonus once per user."""
        if credit_settings.signup_bonus <= 0:
            return None
        return self.grant_credits(
            user_id=user_id,
            amount=credit_settings.signup_bonus,
            description="Sign-up bonus",
            idempotency_key=signup_bonus_key(user_id),
        )

    def get_transaction_history(
        self,
        user_id: int,
        page: int = 1,
        limit: int = MAX_TRANSACTIONS_PER_PAGE,
    ) -> tuple[list[CreditTransaction], dict[str, int]]:
        """Get user's transaction history, newest first.

        Returns:
            (transactions, pagination) where pagination has total/pages/current
        """
        page = max(page, 1)
        with self.db.session() as session:
            query = session.query(CreditTransaction).filter(CreditTransaction.user_id == user_id)
            total = query.count()
            transactions = query.order_by(
                CreditTransaction.created_at.desc(),
                CreditTransaction.id.desc(),
            ).offset((page - 1) * limit).limit(limit).all()

        pages = (total + limit - 1) // limit
        return transactions, {"total": total, "pages": pages, "current": page}

    def get_user_purchased_items(self, user_id: int) -> set[str]:
        """Return owned items as ``"TYPE:itemId"`` strings."""
        with self.db.session() as session:
            items = session.query(PurchasedItem).filter(PurchasedItem.user_id == user_id).all()
            return {item.key for item in items}

    # ==================== EXPIRATION ====================

    def sweep_expired(self, user_id: int, now: datetime | None = None) -> int:
        """Zero out expired entries that still hold credits.

        Monthly refresh entries go first, then oldest. Each entry is committed
        on its own; a failing entry is logged and skipped, so a partial sweep
        is a normal outcome.

        Returns:
            Total credits removed from the aggregate
        """
        now = now or datetime.utcnow()

        with self.db.session() as session:
            expired_ids = [
                row.id
                for row in session.query(CreditTransaction.id).filter(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.expiration_date.isnot(None),
                    CreditTransaction.expiration_date < now,
                    CreditTransaction.expiration_date_processed_at.is_(None),
                    CreditTransaction.remaining_amount > 0,
                ).order_by(
                    case(
                        (CreditTransaction.type == CreditTransactionType.MONTHLY_REFRESH, 1),
                        else_=0,
                    ).desc(),
                    CreditTransaction.created_at.asc(),
                    CreditTransaction.id.asc(),
                )
            ]

        swept = 0
        for transaction_id in expired_ids:
            try:
                swept += self._expire_entry(transaction_id, user_id, now)
            except SQLAlchemyError as e:
                self.logger.error(
                    "credit_expiration_failed",
                    user_id=user_id,
                    transaction_id=transaction_id,
                    error=str(e),
                )
                continue

        if swept:
            self.logger.info("credits_expired", user_id=user_id, amount=swept, entries=len(expired_ids))
            self.notify_balance_change(user_id)
        return swept

    def _expire_entry(self, transaction_id: int, user_id: int, now: datetime) -> int:
        with self.db.session() as session:
            entry = session.get(CreditTransaction, transaction_id, with_for_update=True)
            if entry is None or entry.expiration_date_processed_at is not None or entry.remaining_amount <= 0:
                return 0

            amount = entry.remaining_amount
            entry.remaining_amount = 0
            entry.expiration_date_processed_at = now
            session.flush()
            self._increment(session, user_id, -amount)
            return amount

    def sweep_all_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Sweep every user holding expired, unprocessed credits.

        Returns:
            Dict with users_affected and credits_expired
        """
        now = now or datetime.utcnow()
        with self.db.session() as session:
            user_ids = [
                row.user_id
                for row in session.query(CreditTransaction.user_id).filter(
                    CreditTransaction.expiration_date.isnot(None),
                    CreditTransaction.expiration_date < now,
                    CreditTransaction.expiration_date_processed_at.is_(None),
                    CreditTransaction.remaining_amount > 0,
                ).distinct()
            ]

        total = 0
        affected = 0
        for user_id in user_ids:
            swept = self.sweep_expired(user_id, now)
            if swept:
                affected += 1
                total += swept

        return {"users_affected": affected, "credits_expired": total}

    # ==================== MONTHLY REFRESH ====================

    def add_free_monthly_credits_if_needed(
        self,
        user_id: int,
        cached_last_refresh_at: datetime | None,
        cached_credits: int,
        credit_settings: CreditSettings,
        now: datetime | None = None,
    ) -> int:
        """Grant the monthly free credits when a month has passed.

        The cached values come from the session snapshot. When they say a
        refresh is due, the durable row is re-read and the refresh is claimed
        with a compare-and-set on ``last_credit_refresh_at``; only the caller
        whose update matches the value it read goes on to sweep and grant.

        Returns:
            Current balance
        """
        now = now or datetime.utcnow()
        if not is_refresh_due(cached_last_refresh_at, now):
            return cached_credits

        with self.db.session() as session:
            user = session.get(UserAccount, user_id)
            if not user:
                raise NotFoundError("User not found")

            last_refresh_at = user.last_credit_refresh_at
            if not is_refresh_due(last_refresh_at, now):
                return user.current_credits

            if last_refresh_at is None:
                unchanged = UserAccount.last_credit_refresh_at.is_(None)
            else:
                unchanged = UserAccount.last_credit_refresh_at == last_refresh_at
            claimed = session.execute(
                update(UserAccount)
                .where(UserAccount.id == user_id, unchanged)
                .values(last_credit_refresh_at=now)
            ).rowcount

        if not claimed:
            # A concurrent validation is already granting this month's credits
            return self.get_balance(user_id)

        self.sweep_expired(user_id, now)

        amount = credit_settings.free_monthly_credits
        if amount > 0:
            with self.db.session() as session:
                self.grant_in_session(
                    session,
                    user_id=user_id,
                    amount=amount,
                    description="Free monthly credits",
                    type=CreditTransactionType.MONTHLY_REFRESH,
                    expiration_date=now + relativedelta(months=1),
                )
            self.logger.info("monthly_credits_granted", user_id=user_id, amount=amount)
            self.notify_balance_change(user_id)

        return self.get_balance(user_id)

    # ==================== CONSUMPTION ====================

    def consume(
        self,
        user_id: int,
        amount: int,
        description: str,
        now: datetime | None = None,
    ) -> int:
        """Spend credits, oldest entries first.

        Expired entries are swept first so the guard only counts live credits.
        Entry deductions, the USAGE audit entry and the aggregate decrement
        commit together.

        Args:
            user_id: User ID
            amount: Amount to spend (positive)
            description: Audit description

        Returns:
            Balance after the debit

        Raises:
            InsufficientCreditsError: If not enough credits (nothing is changed)
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        now = now or datetime.utcnow()
        self.sweep_expired(user_id, now)

        with self.db.session() as session:
            user = session.get(UserAccount, user_id, with_for_update=True)
            if not user:
                raise NotFoundError("User not found")

            available = user.current_credits or 0
            if available < amount:
                raise InsufficientCreditsError(amount, available)

            active_entries = session.query(CreditTransaction).filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.remaining_amount > 0,
                CreditTransaction.expiration_date_processed_at.is_(None),
                or_(
                    CreditTransaction.expiration_date.is_(None),
                    CreditTransaction.expiration_date >= now,
                ),
            ).order_by(
                CreditTransaction.created_at.asc(),
                CreditTransaction.id.asc(),
            ).all()

            remaining_to_deduct = amount
            for entry in active_entries:
                if remaining_to_deduct <= 0:
                    break
                deduct = min(entry.remaining_amount, remaining_to_deduct)
                entry.remaining_amount -= deduct
                remaining_to_deduct -= deduct

            if remaining_to_deduct > 0:
                self.logger.warning(
                    "credit_ledger_short",
                    user_id=user_id,
                    requested=amount,
                    uncovered=remaining_to_deduct,
                )

            self._add_entry(
                session,
                user_id=user_id,
                amount=-amount,
                remaining_amount=0,
                type=CreditTransactionType.USAGE,
                description=description,
            )
            session.flush()
            self._increment(session, user_id, -amount)
            new_balance = available - amount

        self.logger.info("credits_consumed", user_id=user_id, amount=amount, new_balance=new_balance)
        self.notify_balance_change(user_id)
        return new_balance

    # ==================== PACKAGES ====================

    def record_package_purchase(
        self,
        user_id: int,
        package_id: str,
        payment_intent_id: str,
        now: datetime | None = None,
    ) -> CreditTransaction | None:
        """Turn a confirmed payment into a PURCHASE entry (once per payment intent)."""
        package = self.get_credit_package(package_id)
        if not package:
            raise NotFoundError(f"Invalid package: {package_id}")

        now = now or datetime.utcnow()
        return self.grant_credits(
            user_id=user_id,
            amount=package["credits"],
            description=f"Purchased {package['credits']} credits ({package_id})",
            idempotency_key=purchase_key(payment_intent_id),
            type=CreditTransactionType.PURCHASE,
            expiration_date=now + relativedelta(years=settings.credits_expiration_years),
            payment_intent_id=payment_intent_id,
        )

    @classmethod
    def get_credit_package(cls, package_id: str) -> dict[str, Any] | None:
        return cls.CREDIT_PACKAGES.get(package_id)

    @classmethod
    def get_packages(cls) -> list[dict[str, Any]]:
        """Get available credit packages."""
        packages = []
        for package_id, info in cls.CREDIT_PACKAGES.items():
            packages.append({
                "id": package_id,
                "credits": info["credits"],
                "price_eur": info["price_eur"],
                "price_per_credit": info["price_eur"] / info["credits"],
            })
        return packages


# Singleton instance
credit_service = CreditService()
