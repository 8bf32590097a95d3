"""Credit ledger: balance mutations, reservations, trial grants and sweeps."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_ledger import (
    STATUS_COMPLETED,
    STATUS_REFUNDED,
    STATUS_RESERVED,
    CreditLedger,
)
from models.user import User
from services.credit_errors import (
    AccountNotFound,
    CreditError,
    InsufficientCredits,
    InvalidAmount,
    InvalidReservationState,
    TrialAlreadyUsed,
)
from services.pricing import CREDIT_INCREMENT, ServiceType

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
LOOPBACK_FINGERPRINTS = frozenset({"::1", "127.0.0.1", "::ffff:127.0.0.1", "unknown", "localhost"})
MANUAL_CREDIT_TYPES = ("purchase", "refund", "admin_adjustment")

Amount = Union[Decimal, float, int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_credits(value: Amount) -> Decimal:
    """Normalize an amount to the ledger's 0.01 credit precision."""
    return Decimal(str(value if value is not None else 0)).quantize(CREDIT_INCREMENT, rounding=ROUND_HALF_UP)


def effective_amount(entry: CreditLedger) -> Decimal:
    """Amount the entry moved the balance by when it was written.

    A partially confirmed reservation shows its final charge in ``amount``;
    the hold it originally took is kept in its metadata.
    """
    reserved_amount = (entry.metadata_json or {}).get("reserved_amount")
    if reserved_amount is not None:
        return -to_credits(reserved_amount)
    return to_credits(entry.amount)


async def _lock_account(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(user_id)
    return account


async def _apply_delta(
    db: AsyncSession,
    user_id: str,
    delta: Decimal,
    *,
    transaction_type: str,
    status: str = STATUS_COMPLETED,
    service_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    account: Optional[User] = None,
) -> CreditLedger:
    """Change a balance and append the matching ledger entry.

    This is the only code path that writes ``credits_balance`` or inserts a
    ledger row. It must run inside an open transaction; the account row is
    locked before the balance is read. ``account`` may be passed when the
    caller already holds that lock.
    """
    if account is None:
        account = await _lock_account(db, user_id)

    delta = to_credits(delta)
    current_balance = to_credits(account.credits_balance)
    if delta < 0 and current_balance + delta < 0:
        raise InsufficientCredits(required=-delta, available=current_balance)

    next_balance = current_balance + delta
    account.credits_balance = next_balance
    entry = CreditLedger(
        user_id=user_id,
        amount=delta,
        balance_after=next_balance,
        transaction_type=transaction_type,
        service_type=service_type,
        reference_id=reference_id,
        status=status,
        description=description,
        metadata_json=metadata,
    )
    db.add(entry)
    await db.flush()
    logger.info(
        "credit_mutation user=%s delta=%s type=%s status=%s ref=%s balance=%s entry=%s",
        user_id,
        delta,
        transaction_type,
        status,
        reference_id,
        next_balance,
        entry.id,
    )
    return entry


def fingerprint_lock_statement(fingerprint: str):
    """Transaction-scoped PostgreSQL advisory lock keyed on a signup fingerprint."""
    return select(func.pg_advisory_xact_lock(func.hashtext(fingerprint)))


async def _sum_amounts(db: AsyncSession, *conditions) -> Decimal:
    result = await db.execute(select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(*conditions))
    return to_credits(result.scalar() or 0)


async def _remaining_trial_credits(db: AsyncSession, user_id: str, expires_at: datetime) -> Decimal:
    """Trial credits granted minus trial-window usage and earlier expirations."""
    granted = await _sum_amounts(
        db,
        CreditLedger.user_id == user_id,
        CreditLedger.transaction_type == "trial_grant",
    )
    used = -await _sum_amounts(
        db,
        CreditLedger.user_id == user_id,
        CreditLedger.transaction_type == "usage",
        CreditLedger.status != STATUS_REFUNDED,
        CreditLedger.created_at <= expires_at,
    )
    already_expired = -await _sum_amounts(
        db,
        CreditLedger.user_id == user_id,
        CreditLedger.transaction_type == "expiration",
    )
    return max(ZERO, granted - used - already_expired)


class CreditService:
    """Prepaid credit ledger bound to one storage handle.

    Every public coroutine runs in exactly one transaction and either commits
    all of its writes or none of them.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_maker() as db:
            async with db.begin():
                yield db

    # Accounts and balances

    async def ensure_account(self, user_id: str, email: Optional[str] = None) -> User:
        """Return the account, creating it with a zero balance on first use."""
        async with self._transaction() as db:
            account = await db.get(User, user_id)
            if account is None:
                account = User(
                    id=user_id,
                    email=email or f"{user_id}@local.invalid",
                    credits_balance=ZERO,
                    trial_credits_granted=False,
                )
                db.add(account)
                await db.flush()
                logger.info("credit_account_created user=%s", user_id)
            return account

    async def get_balance(self, user_id: str) -> Decimal:
        async with self._session_maker() as db:
            result = await db.execute(select(User.credits_balance).where(User.id == user_id))
            row = result.first()
        if row is None:
            raise AccountNotFound(user_id)
        return to_credits(row[0])

    async def has_enough_credits(self, user_id: str, amount: Amount) -> bool:
        return await self.get_balance(user_id) >= to_credits(amount)

    async def get_balance_breakdown(self, user_id: str) -> Dict[str, Any]:
        """Split the balance into the still-valid trial share and the purchased rest."""
        async with self._session_maker() as db:
            account = await db.get(User, user_id)
            if account is None:
                raise AccountNotFound(user_id)
            total = to_credits(account.credits_balance)
            expires_at = _as_utc(account.trial_credits_expires_at)
            trial = ZERO
            if account.trial_credits_granted and expires_at and expires_at > self._clock():
                trial = min(total, await _remaining_trial_credits(db, user_id, account.trial_credits_expires_at))
        return {
            "total": total,
            "trial": trial,
            "purchased": max(ZERO, total - trial),
            "trial_expires_at": expires_at,
        }

    async def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CreditLedger], int]:
        """Return one page of ledger entries, newest first, and the total count."""
        page_size = min(max(int(limit), 1), max(int(settings.CREDIT_HISTORY_MAX_LIMIT), 1))
        skip = max(int(offset), 0)
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
                .limit(page_size)
                .offset(skip)
            )
            entries = list(result.scalars().all())
            count_result = await db.execute(
                select(func.count()).select_from(CreditLedger).where(CreditLedger.user_id == user_id)
            )
            total = int(count_result.scalar() or 0)
        return entries, total

    async def audit_account(self, user_id: str) -> Dict[str, Any]:
        """Replay the ledger and compare it with the stored balance.

        Entries are folded in insertion order using the amount that actually
        moved the balance at write time, so every ``balance_after`` snapshot
        must be reproduced exactly.
        """
        async with self._session_maker() as db:
            account = await db.get(User, user_id)
            if account is None:
                raise AccountNotFound(user_id)
            result = await db.execute(
                select(CreditLedger).where(CreditLedger.user_id == user_id).order_by(CreditLedger.id.asc())
            )
            entries = list(result.scalars().all())
            balance = to_credits(account.credits_balance)

        running = ZERO
        mismatched: List[int] = []
        for entry in entries:
            running += effective_amount(entry)
            if running != to_credits(entry.balance_after):
                mismatched.append(entry.id)
        consistent = running == balance and not mismatched
        if not consistent:
            logger.error(
                "ledger_mismatch user=%s balance=%s replayed=%s entries=%s",
                user_id,
                balance,
                running,
                mismatched,
            )
        return {
            "balance": balance,
            "replayed": running,
            "entries": len(entries),
            "mismatched_entries": mismatched,
            "consistent": consistent,
        }

    # Direct mutations

    async def charge(
        self,
        user_id: str,
        amount: Amount,
        service_type: Union[str, ServiceType],
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Debit a usage cost that is known up front."""
        cost = to_credits(amount)
        if cost <= 0:
            raise InvalidAmount(amount)
        tag = ServiceType(service_type).value
        async with self._transaction() as db:
            entry = await _apply_delta(
                db,
                user_id,
                -cost,
                transaction_type="usage",
                service_type=tag,
                reference_id=reference_id,
                description=description or f"Usage for {tag}",
                metadata=metadata,
            )
            return entry.id

    async def add_credits(
        self,
        user_id: str,
        amount: Amount,
        transaction_type: str = "purchase",
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record a purchase, goodwill refund or admin adjustment."""
        if transaction_type not in MANUAL_CREDIT_TYPES:
            raise ValueError(f"Unsupported transaction type: {transaction_type}")
        delta = to_credits(amount)
        if delta == 0 or (delta < 0 and transaction_type != "admin_adjustment"):
            raise InvalidAmount(amount)
        async with self._transaction() as db:
            entry = await _apply_delta(
                db,
                user_id,
                delta,
                transaction_type=transaction_type,
                reference_id=reference_id,
                description=description,
                metadata=metadata,
            )
            return entry.id

    # Reservation protocol

    async def reserve(
        self,
        user_id: str,
        amount: Amount,
        service_type: Union[str, ServiceType],
        reference_id: str,
        description: Optional[str] = None,
    ) -> int:
        """Hold ``amount`` before a job starts. Returns the reservation entry id.

        Raises InsufficientCredits when the balance cannot cover the hold; the
        job must not start in that case.
        """
        hold = to_credits(amount)
        if hold <= 0:
            raise InvalidAmount(amount)
        tag = ServiceType(service_type).value
        async with self._transaction() as db:
            entry = await _apply_delta(
                db,
                user_id,
                -hold,
                transaction_type="usage",
                status=STATUS_RESERVED,
                service_type=tag,
                reference_id=reference_id,
                description=description or f"Reserved for {tag}",
            )
            return entry.id

    async def _lock_reservation(self, db: AsyncSession, entry_id: int) -> Tuple[User, CreditLedger]:
        entry = await db.get(CreditLedger, entry_id)
        if entry is None:
            raise InvalidReservationState(entry_id, "entry not found")
        # Account first, then entry: the same order every other mutation uses.
        account = await _lock_account(db, entry.user_id)
        result = await db.execute(
            select(CreditLedger)
            .where(CreditLedger.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one()
        if entry.status != STATUS_RESERVED:
            raise InvalidReservationState(entry_id, f"status is {entry.status}")
        return account, entry

    async def confirm(self, entry_id: int, actual_amount: Optional[Amount] = None) -> None:
        """Settle a reservation at its final price.

        With no ``actual_amount`` the held amount is charged as is. A lower
        amount credits the difference back through a refund entry; a higher
        amount is rejected.
        """
        async with self._transaction() as db:
            account, entry = await self._lock_reservation(db, entry_id)
            reserved = -to_credits(entry.amount)

            if actual_amount is None:
                charged = reserved
            else:
                charged = to_credits(actual_amount)
                if charged < 0:
                    raise InvalidReservationState(entry_id, "actual amount cannot be negative")
                if charged > reserved:
                    raise InvalidReservationState(
                        entry_id,
                        f"actual amount {charged} exceeds reserved amount {reserved}",
                    )

            difference = reserved - charged
            if difference > 0:
                refund = await _apply_delta(
                    db,
                    entry.user_id,
                    difference,
                    transaction_type="refund",
                    service_type=entry.service_type,
                    reference_id=f"refund_{entry.id}",
                    description=f"Refund from transaction {entry.id}",
                    metadata={"original_transaction_id": entry.id},
                    account=account,
                )
                entry.amount = -charged
                entry.metadata_json = {
                    **(entry.metadata_json or {}),
                    "reserved_amount": str(reserved),
                    "refund_transaction_id": refund.id,
                }
            entry.status = STATUS_COMPLETED
            entry.updated_at = self._clock()
        logger.info("reservation_confirmed entry=%s reserved=%s charged=%s", entry_id, reserved, charged)

    async def cancel(self, entry_id: int) -> None:
        """Release a reservation and refund the full held amount."""
        async with self._transaction() as db:
            account, entry = await self._lock_reservation(db, entry_id)
            refund_amount = -to_credits(entry.amount)
            await _apply_delta(
                db,
                entry.user_id,
                refund_amount,
                transaction_type="refund",
                service_type=entry.service_type,
                reference_id=f"cancel_{entry.id}",
                description=f"Cancelled reservation {entry.id}",
                metadata={"original_transaction_id": entry.id},
                account=account,
            )
            entry.status = STATUS_REFUNDED
            entry.updated_at = self._clock()
        logger.info("reservation_cancelled entry=%s refunded=%s", entry_id, refund_amount)

    async def find_reservation(self, reference_id: str) -> Optional[CreditLedger]:
        """Return the newest usage entry tied to an external job reference."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditLedger)
                .where(
                    CreditLedger.reference_id == reference_id,
                    CreditLedger.transaction_type == "usage",
                )
                .order_by(CreditLedger.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # Trial credits

    async def grant_trial(self, user_id: str, signup_fingerprint: Optional[str]) -> Optional[int]:
        """Grant the one-time trial bonus.

        Returns the grant entry id, or None when the account already had its
        trial. Raises TrialAlreadyUsed when another granted account signed up
        from the same non-loopback fingerprint.
        """
        fingerprint = (signup_fingerprint or "").strip() or "unknown"
        async with self._transaction() as db:
            account = await _lock_account(db, user_id)
            if account.trial_credits_granted:
                logger.warning("trial_grant_skipped user=%s reason=already_granted", user_id)
                return None

            if fingerprint not in LOOPBACK_FINGERPRINTS:
                if db.bind.dialect.name == "postgresql":
                    # Row locks only cover this account; grants for other accounts
                    # sharing the fingerprint queue here until commit.
                    await db.execute(fingerprint_lock_statement(fingerprint))
                existing = await db.execute(
                    select(User.id)
                    .where(
                        User.signup_ip == fingerprint,
                        User.trial_credits_granted.is_(True),
                        User.id != user_id,
                    )
                    .limit(1)
                )
                if existing.scalar_one_or_none() is not None:
                    logger.warning("trial_grant_denied user=%s fingerprint=%s reason=duplicate", user_id, fingerprint)
                    raise TrialAlreadyUsed(fingerprint)

            expires_at = self._clock() + timedelta(days=max(int(settings.TRIAL_CREDITS_EXPIRATION_DAYS), 0))
            account.trial_credits_granted = True
            account.trial_credits_expires_at = expires_at
            account.signup_ip = fingerprint
            entry = await _apply_delta(
                db,
                user_id,
                to_credits(settings.TRIAL_CREDITS_AMOUNT),
                transaction_type="trial_grant",
                reference_id=f"trial_{user_id}",
                description="Trial credits",
                metadata={"expires_at": expires_at.isoformat()},
                account=account,
            )
            return entry.id

    async def _expire_account_trial(self, user_id: str) -> Decimal:
        async with self._transaction() as db:
            account = await _lock_account(db, user_id)
            if not account.trial_credits_granted or account.trial_credits_expires_at is None:
                return ZERO
            remaining = await _remaining_trial_credits(db, user_id, account.trial_credits_expires_at)
            amount = min(remaining, to_credits(account.credits_balance))
            if amount <= 0:
                return ZERO
            await _apply_delta(
                db,
                user_id,
                -amount,
                transaction_type="expiration",
                reference_id=f"expire_trial_{user_id}",
                description="Trial credits expired",
                account=account,
            )
            return amount

    async def expire_trial_credits(self) -> int:
        """Claw back unused trial credit from accounts whose trial window closed.

        Returns the number of accounts debited.
        """
        now = self._clock()
        async with self._session_maker() as db:
            result = await db.execute(
                select(User.id).where(
                    User.trial_credits_granted.is_(True),
                    User.trial_credits_expires_at < now,
                )
            )
            user_ids = list(result.scalars().all())

        expired_count = 0
        for user_id in user_ids:
            try:
                deducted = await self._expire_account_trial(user_id)
            except (CreditError, SQLAlchemyError) as exc:
                logger.exception("Trial expiry failed for user %s: %s", user_id, exc)
                continue
            if deducted > 0:
                expired_count += 1
                logger.info("trial_expired user=%s deducted=%s", user_id, deducted)
        return expired_count

    async def cancel_stale_reservations(self, max_age_minutes: int) -> int:
        """Cancel reservations left open longer than ``max_age_minutes``."""
        cutoff = self._clock() - timedelta(minutes=max(int(max_age_minutes), 1))
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditLedger.id).where(
                    CreditLedger.status == STATUS_RESERVED,
                    CreditLedger.created_at < cutoff,
                )
            )
            entry_ids = list(result.scalars().all())

        cancelled = 0
        for entry_id in entry_ids:
            try:
                await self.cancel(entry_id)
            except InvalidReservationState:
                # Settled by its owner after the scan.
                continue
            except SQLAlchemyError as exc:
                logger.exception("Stale reservation %s could not be cancelled: %s", entry_id, exc)
                continue
            cancelled += 1
        if cancelled:
            logger.warning("stale_reservations_cancelled count=%s cutoff=%s", cancelled, cutoff.isoformat())
        return cancelled


def get_credit_service() -> CreditService:
    """FastAPI dependency returning the ledger bound to the application database."""
    return CreditService(async_session_maker)
