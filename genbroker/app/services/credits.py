"""Atomic, auditable credit accounting: reserve, settle, release, grant.

Every balance mutation goes through this module. Writes are conditional
updates (compare-and-swap on the guarded column) so concurrent workers can
never overdraw an account or settle a reservation twice.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import Database, insert_for
from ..core.errors import (
    InsufficientCreditsError,
    ReservationExpiredError,
    ReservationNotFoundError,
)
from ..db.models import DbCreditAccount, DbCreditReservation, DbCreditTransaction

logger = logging.getLogger(__name__)

RESERVATION_ACTIVE = "active"
RESERVATION_CONSUMED = "consumed"
RESERVATION_RELEASED = "released"

TX_RESERVE = "reserve"
TX_CONSUME = "consume"
TX_REFUND = "refund"
TX_RELEASE = "release"
TX_GRANT = "grant"
TRANSACTION_TYPES = (TX_RESERVE, TX_CONSUME, TX_REFUND, TX_RELEASE, TX_GRANT)

RELEASE_REASON_EXPIRED = "expired"


@dataclass
class Reservation:
    id: str
    user_id: str
    reserved_amount: int
    job_id: str | None
    status: str
    expires_at: int
    created_at: int
    consumed_amount: int = 0
    refunded_amount: int = 0
    release_reason: str | None = None
    settled_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RESERVATION_ACTIVE

    def is_expired(self, now: int | None = None) -> bool:
        return self.is_active and self.expires_at <= (now if now is not None else int(time.time()))


@dataclass
class Settlement:
    reservation_id: str
    consumed: int
    refunded: int
    shortfall: int = 0
    status: str = RESERVATION_CONSUMED
    already_handled: bool = False


@dataclass
class CreditTransaction:
    id: str
    user_id: str
    type: str
    amount: int
    model: str | None
    job_id: str | None
    reservation_id: str | None
    description: str | None
    meta: dict[str, Any] | None
    created_at: int


@dataclass
class CreditBalance:
    user_id: str
    total: int
    available: int
    reserved: int
    consumed: int
    last_refill_period: str | None = None
    active_reservations: list[Reservation] = field(default_factory=list)


@dataclass
class UsageStats:
    user_id: str
    days: int
    total_consumed: int
    total_granted: int
    total_refunded: int
    transaction_count: int
    model_usage: dict[str, int]
    daily_usage: dict[str, int]


@dataclass
class GlobalStats:
    days: int
    accounts: int
    total_credits: int
    available_credits: int
    reserved_credits: int
    consumed_credits: int
    active_reservations: int
    low_balance_accounts: int
    transaction_count: int
    volume_by_type: dict[str, int]


@dataclass
class BalanceCheck:
    user_id: str
    is_valid: bool
    issues: list[str]
    expected_reserved: int = 0
    actual_reserved: int = 0


def current_period(now: int | None = None) -> str:
    return time.strftime("%Y-%m", time.gmtime(now if now is not None else time.time()))


class CreditLedger:
    """Service layer that owns all credit balance mutations."""

    def __init__(self, db: Database, *, reservation_ttl_seconds: int | None = None) -> None:
        self.db = db
        self.reservation_ttl_seconds = (
            reservation_ttl_seconds if reservation_ttl_seconds is not None else settings.reservation_ttl_seconds
        )

    # --- Mutations ---

    def reserve(
        self,
        user_id: str,
        amount: int,
        *,
        job_id: str | None = None,
        model: str | None = None,
        description: str | None = None,
        ttl_seconds: int | None = None,
    ) -> Reservation:
        """Hold ``amount`` credits. Raises InsufficientCreditsError without side effects."""
        if amount <= 0:
            raise ValueError("Reservation amount must be positive")

        now = int(time.time())
        ttl = ttl_seconds if ttl_seconds is not None else self.reservation_ttl_seconds
        reservation = Reservation(
            id=uuid.uuid4().hex,
            user_id=user_id,
            reserved_amount=amount,
            job_id=job_id,
            status=RESERVATION_ACTIVE,
            expires_at=now + ttl,
            created_at=now,
        )

        with self.db.session() as session:
            result = session.execute(
                update(DbCreditAccount)
                .where(DbCreditAccount.user_id == user_id, DbCreditAccount.available_credits >= amount)
                .values(
                    available_credits=DbCreditAccount.available_credits - amount,
                    reserved_credits=DbCreditAccount.reserved_credits + amount,
                    updated_at=now,
                )
            )
            if int(result.rowcount or 0) != 1:
                available = session.scalar(
                    select(DbCreditAccount.available_credits).where(DbCreditAccount.user_id == user_id).limit(1)
                )
                logger.info(
                    "Reservation rejected: insufficient credits",
                    extra={"data": {"user_id": user_id, "required": amount, "available": int(available or 0)}},
                )
                raise InsufficientCreditsError(required=amount, available=int(available or 0))

            session.add(
                DbCreditReservation(
                    id=reservation.id,
                    user_id=user_id,
                    reserved_amount=amount,
                    job_id=job_id,
                    status=RESERVATION_ACTIVE,
                    consumed_amount=0,
                    refunded_amount=0,
                    expires_at=reservation.expires_at,
                    created_at=now,
                )
            )
            self._append(
                session,
                user_id=user_id,
                type=TX_RESERVE,
                amount=amount,
                model=model,
                job_id=job_id,
                reservation_id=reservation.id,
                description=description or f"Reserved {amount} credits",
                now=now,
            )

        logger.info(
            "Credits reserved",
            extra={"data": {"user_id": user_id, "reservation_id": reservation.id, "amount": amount}},
        )
        return reservation

    def settle(self, reservation_id: str, actual_cost: int, *, model: str | None = None) -> Settlement:
        """Consume ``actual_cost`` (capped at the reserved amount) and refund the rest."""
        if actual_cost < 0:
            raise ValueError("Actual cost cannot be negative")

        now = int(time.time())
        with self.db.session() as session:
            row = self._load_reservation(session, reservation_id)

            if row.status != RESERVATION_ACTIVE:
                return _prior_settlement(row)
            if row.expires_at <= now:
                logger.warning(
                    "Settle attempted on expired reservation",
                    extra={"data": {"reservation_id": reservation_id, "expires_at": row.expires_at}},
                )
                raise ReservationExpiredError(reservation_id, row.expires_at)

            reserved = row.reserved_amount
            consumed = min(actual_cost, reserved)
            refunded = reserved - consumed
            shortfall = actual_cost - consumed

            result = session.execute(
                update(DbCreditReservation)
                .where(DbCreditReservation.id == reservation_id, DbCreditReservation.status == RESERVATION_ACTIVE)
                .values(
                    status=RESERVATION_CONSUMED,
                    consumed_amount=consumed,
                    refunded_amount=refunded,
                    settled_at=now,
                )
            )
            if int(result.rowcount or 0) != 1:
                # Lost the race to a concurrent settle, release or sweep.
                session.refresh(row)
                return _prior_settlement(row)

            session.execute(
                update(DbCreditAccount)
                .where(DbCreditAccount.user_id == row.user_id)
                .values(
                    reserved_credits=DbCreditAccount.reserved_credits - reserved,
                    available_credits=DbCreditAccount.available_credits + refunded,
                    total_credits=DbCreditAccount.total_credits - consumed,
                    consumed_credits=DbCreditAccount.consumed_credits + consumed,
                    updated_at=now,
                )
            )
            self._append(
                session,
                user_id=row.user_id,
                type=TX_CONSUME,
                amount=consumed,
                model=model,
                job_id=row.job_id,
                reservation_id=reservation_id,
                description=f"Consumed {consumed} of {reserved} reserved credits",
                meta={"actual_cost": actual_cost, "shortfall": shortfall} if shortfall else None,
                now=now,
            )
            if refunded > 0:
                self._append(
                    session,
                    user_id=row.user_id,
                    type=TX_REFUND,
                    amount=refunded,
                    model=model,
                    job_id=row.job_id,
                    reservation_id=reservation_id,
                    description=f"Refunded {refunded} unused credits",
                    now=now,
                )

        if shortfall:
            logger.warning(
                "Actual cost exceeded reservation; settled at reserved amount",
                extra={"data": {"reservation_id": reservation_id, "reserved": reserved, "actual_cost": actual_cost}},
            )
        logger.info(
            "Reservation settled",
            extra={"data": {"reservation_id": reservation_id, "consumed": consumed, "refunded": refunded}},
        )
        return Settlement(
            reservation_id=reservation_id,
            consumed=consumed,
            refunded=refunded,
            shortfall=shortfall,
        )

    def release(self, reservation_id: str, reason: str) -> int:
        """Return the full reserved amount to available. No-op (0) once terminal."""
        now = int(time.time())
        with self.db.session() as session:
            row = self._load_reservation(session, reservation_id)
            if row.status != RESERVATION_ACTIVE:
                logger.info(
                    "Release skipped: reservation already handled",
                    extra={"data": {"reservation_id": reservation_id, "status": row.status, "reason": reason}},
                )
                return 0

            amount = row.reserved_amount
            result = session.execute(
                update(DbCreditReservation)
                .where(DbCreditReservation.id == reservation_id, DbCreditReservation.status == RESERVATION_ACTIVE)
                .values(
                    status=RESERVATION_RELEASED,
                    refunded_amount=amount,
                    release_reason=reason[:255],
                    settled_at=now,
                )
            )
            if int(result.rowcount or 0) != 1:
                return 0

            session.execute(
                update(DbCreditAccount)
                .where(DbCreditAccount.user_id == row.user_id)
                .values(
                    reserved_credits=DbCreditAccount.reserved_credits - amount,
                    available_credits=DbCreditAccount.available_credits + amount,
                    updated_at=now,
                )
            )
            self._append(
                session,
                user_id=row.user_id,
                type=TX_RELEASE,
                amount=amount,
                job_id=row.job_id,
                reservation_id=reservation_id,
                description=f"Released {amount} credits: {reason}",
                now=now,
            )

        logger.info(
            "Reservation released",
            extra={"data": {"reservation_id": reservation_id, "amount": amount, "reason": reason}},
        )
        return amount

    def grant(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        meta: dict[str, Any] | None = None,
    ) -> int:
        """Add credits to total and available. Returns the new available balance."""
        if amount <= 0:
            raise ValueError("Grant amount must be positive")

        now = int(time.time())
        with self.db.session() as session:
            self._ensure_account_in_session(session, user_id=user_id, now=now, initial_grant=0)
            session.execute(
                update(DbCreditAccount)
                .where(DbCreditAccount.user_id == user_id)
                .values(
                    total_credits=DbCreditAccount.total_credits + amount,
                    available_credits=DbCreditAccount.available_credits + amount,
                    updated_at=now,
                )
            )
            self._append(
                session,
                user_id=user_id,
                type=TX_GRANT,
                amount=amount,
                description=description,
                meta=meta,
                now=now,
            )
            available = session.scalar(
                select(DbCreditAccount.available_credits).where(DbCreditAccount.user_id == user_id).limit(1)
            )

        logger.info("Credits granted", extra={"data": {"user_id": user_id, "amount": amount}})
        return int(available or 0)

    def ensure_account(self, user_id: str, *, initial_grant: int | None = None) -> bool:
        """Create the account with the signup grant. Returns whether it was created."""
        grant = settings.signup_credit_grant if initial_grant is None else initial_grant
        if grant < 0:
            raise ValueError("Initial grant cannot be negative")
        now = int(time.time())
        with self.db.session() as session:
            return self._ensure_account_in_session(session, user_id=user_id, now=now, initial_grant=grant)

    def monthly_refill(self, user_id: str, amount: int | None = None, *, period: str | None = None) -> bool:
        """Grant the monthly allowance at most once per ``YYYY-MM`` period."""
        refill = settings.monthly_refill_amount if amount is None else amount
        if refill <= 0:
            raise ValueError("Refill amount must be positive")

        now = int(time.time())
        period = period or current_period(now)
        with self.db.session() as session:
            result = session.execute(
                update(DbCreditAccount)
                .where(
                    DbCreditAccount.user_id == user_id,
                    or_(
                        DbCreditAccount.last_refill_period.is_(None),
                        DbCreditAccount.last_refill_period != period,
                    ),
                )
                .values(
                    total_credits=DbCreditAccount.total_credits + refill,
                    available_credits=DbCreditAccount.available_credits + refill,
                    last_refill_period=period,
                    updated_at=now,
                )
            )
            if int(result.rowcount or 0) != 1:
                return False
            self._append(
                session,
                user_id=user_id,
                type=TX_GRANT,
                amount=refill,
                description=f"Monthly refill {period}",
                meta={"source": "monthly_refill", "period": period},
                now=now,
            )

        logger.info("Monthly refill granted", extra={"data": {"user_id": user_id, "period": period, "amount": refill}})
        return True

    def release_expired(self, now: int | None = None) -> list[Reservation]:
        """Release every active reservation past its expiry. Returns those released here."""
        now = now if now is not None else int(time.time())
        with self.db.session() as session:
            ids = list(
                session.scalars(
                    select(DbCreditReservation.id)
                    .where(
                        DbCreditReservation.status == RESERVATION_ACTIVE,
                        DbCreditReservation.expires_at <= now,
                    )
                    .order_by(DbCreditReservation.expires_at)
                ).all()
            )

        released: list[Reservation] = []
        for reservation_id in ids:
            if self.release(reservation_id, RELEASE_REASON_EXPIRED) > 0:
                reservation = self.get_reservation(reservation_id)
                if reservation is not None:
                    released.append(reservation)

        if released:
            logger.info("Expired reservations swept", extra={"data": {"count": len(released)}})
        return released

    def sweep_expired(self, now: int | None = None) -> int:
        return len(self.release_expired(now))

    # --- Queries ---

    def get_balance(self, user_id: str) -> CreditBalance | None:
        with self.db.session() as session:
            account = session.get(DbCreditAccount, user_id)
            if account is None:
                return None
            rows = session.scalars(
                select(DbCreditReservation)
                .where(
                    DbCreditReservation.user_id == user_id,
                    DbCreditReservation.status == RESERVATION_ACTIVE,
                )
                .order_by(DbCreditReservation.created_at)
            ).all()
            return CreditBalance(
                user_id=account.user_id,
                total=account.total_credits,
                available=account.available_credits,
                reserved=account.reserved_credits,
                consumed=account.consumed_credits,
                last_refill_period=account.last_refill_period,
                active_reservations=[_to_reservation(r) for r in rows],
            )

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self.db.session() as session:
            row = session.get(DbCreditReservation, reservation_id)
            return _to_reservation(row) if row else None

    def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        tx_type: str | None = None,
    ) -> list[CreditTransaction]:
        with self.db.session() as session:
            stmt = select(DbCreditTransaction).where(DbCreditTransaction.user_id == user_id)
            if tx_type:
                stmt = stmt.where(DbCreditTransaction.type == tx_type)
            stmt = (
                stmt.order_by(DbCreditTransaction.created_at.desc(), DbCreditTransaction.id)
                .limit(limit)
                .offset(offset)
            )
            rows = list(session.scalars(stmt).all())
        return [_to_transaction(row) for row in rows]

    def get_usage_stats(self, user_id: str, days: int = 30) -> UsageStats:
        since = int(time.time()) - days * 86400
        with self.db.session() as session:
            rows = list(
                session.scalars(
                    select(DbCreditTransaction).where(
                        DbCreditTransaction.user_id == user_id,
                        DbCreditTransaction.created_at >= since,
                    )
                ).all()
            )

        totals: dict[str, int] = defaultdict(int)
        model_usage: dict[str, int] = defaultdict(int)
        daily_usage: dict[str, int] = defaultdict(int)
        for row in rows:
            totals[row.type] += row.amount
            if row.type == TX_CONSUME:
                model_usage[row.model or "unknown"] += row.amount
                daily_usage[time.strftime("%Y-%m-%d", time.gmtime(row.created_at))] += row.amount

        return UsageStats(
            user_id=user_id,
            days=days,
            total_consumed=totals[TX_CONSUME],
            total_granted=totals[TX_GRANT],
            total_refunded=totals[TX_REFUND],
            transaction_count=len(rows),
            model_usage=dict(model_usage),
            daily_usage=dict(sorted(daily_usage.items())),
        )

    def get_global_stats(self, days: int = 30, low_balance_threshold: int | None = None) -> GlobalStats:
        """Balances summed over every account, plus transaction volume per type over ``days``."""
        threshold = settings.low_balance_threshold if low_balance_threshold is None else low_balance_threshold
        since = int(time.time()) - days * 86400
        with self.db.session() as session:
            accounts, total, available, reserved, consumed = session.execute(
                select(
                    func.count(DbCreditAccount.user_id),
                    func.coalesce(func.sum(DbCreditAccount.total_credits), 0),
                    func.coalesce(func.sum(DbCreditAccount.available_credits), 0),
                    func.coalesce(func.sum(DbCreditAccount.reserved_credits), 0),
                    func.coalesce(func.sum(DbCreditAccount.consumed_credits), 0),
                )
            ).one()
            low_balance = session.scalar(
                select(func.count(DbCreditAccount.user_id)).where(DbCreditAccount.available_credits < threshold)
            )
            active = session.scalar(
                select(func.count(DbCreditReservation.id)).where(DbCreditReservation.status == RESERVATION_ACTIVE)
            )
            volume_rows = session.execute(
                select(
                    DbCreditTransaction.type,
                    func.count(DbCreditTransaction.id),
                    func.coalesce(func.sum(DbCreditTransaction.amount), 0),
                )
                .where(DbCreditTransaction.created_at >= since)
                .group_by(DbCreditTransaction.type)
            ).all()

        volume = {tx_type: 0 for tx_type in TRANSACTION_TYPES}
        transaction_count = 0
        for tx_type, count, amount in volume_rows:
            volume[tx_type] = int(amount)
            transaction_count += int(count)

        return GlobalStats(
            days=days,
            accounts=int(accounts),
            total_credits=int(total),
            available_credits=int(available),
            reserved_credits=int(reserved),
            consumed_credits=int(consumed),
            active_reservations=int(active or 0),
            low_balance_accounts=int(low_balance or 0),
            transaction_count=transaction_count,
            volume_by_type=volume,
        )

    def validate_balance(self, user_id: str) -> BalanceCheck:
        """Check the account identities against the reservation table."""
        with self.db.session() as session:
            account = session.get(DbCreditAccount, user_id)
            if account is None:
                return BalanceCheck(user_id=user_id, is_valid=False, issues=["Account not found"])
            active_sum = session.scalar(
                select(func.coalesce(func.sum(DbCreditReservation.reserved_amount), 0)).where(
                    DbCreditReservation.user_id == user_id,
                    DbCreditReservation.status == RESERVATION_ACTIVE,
                )
            )

        expected_reserved = int(active_sum or 0)
        issues: list[str] = []
        if account.available_credits < 0:
            issues.append(f"Negative available credits: {account.available_credits}")
        if account.reserved_credits < 0:
            issues.append(f"Negative reserved credits: {account.reserved_credits}")
        if account.total_credits != account.available_credits + account.reserved_credits:
            issues.append(
                f"Total {account.total_credits} != available {account.available_credits} "
                f"+ reserved {account.reserved_credits}"
            )
        if account.reserved_credits != expected_reserved:
            issues.append(
                f"Reserved {account.reserved_credits} != active reservations {expected_reserved}"
            )

        if issues:
            logger.warning("Balance validation failed", extra={"data": {"user_id": user_id, "issues": issues}})
        return BalanceCheck(
            user_id=user_id,
            is_valid=not issues,
            issues=issues,
            expected_reserved=expected_reserved,
            actual_reserved=account.reserved_credits,
        )

    def low_balance_users(self, threshold: int | None = None) -> list[CreditBalance]:
        limit = settings.low_balance_threshold if threshold is None else threshold
        with self.db.session() as session:
            rows = list(
                session.scalars(
                    select(DbCreditAccount)
                    .where(DbCreditAccount.available_credits < limit)
                    .order_by(DbCreditAccount.available_credits)
                ).all()
            )
        return [
            CreditBalance(
                user_id=row.user_id,
                total=row.total_credits,
                available=row.available_credits,
                reserved=row.reserved_credits,
                consumed=row.consumed_credits,
                last_refill_period=row.last_refill_period,
            )
            for row in rows
        ]

    # --- Internals ---

    def _load_reservation(self, session: Session, reservation_id: str) -> DbCreditReservation:
        row = session.get(DbCreditReservation, reservation_id)
        if row is None:
            logger.error(
                "Reservation not found: ledger integrity error",
                extra={"data": {"reservation_id": reservation_id}},
            )
            raise ReservationNotFoundError(reservation_id)
        return row

    def _ensure_account_in_session(
        self,
        session: Session,
        *,
        user_id: str,
        now: int,
        initial_grant: int,
    ) -> bool:
        insert_stmt = insert_for(session, DbCreditAccount).values(
            user_id=user_id,
            total_credits=initial_grant,
            available_credits=initial_grant,
            reserved_credits=0,
            consumed_credits=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=[DbCreditAccount.user_id])

        created = int(session.execute(insert_stmt).rowcount or 0) == 1
        if created and initial_grant > 0:
            self._append(
                session,
                user_id=user_id,
                type=TX_GRANT,
                amount=initial_grant,
                description="Membership signup grant",
                meta={"source": "ensure_account"},
                now=now,
            )
        if created:
            logger.info("Credit account created", extra={"data": {"user_id": user_id, "initial_grant": initial_grant}})
        return created

    @staticmethod
    def _append(
        session: Session,
        *,
        user_id: str,
        type: str,
        amount: int,
        now: int,
        model: str | None = None,
        job_id: str | None = None,
        reservation_id: str | None = None,
        description: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        session.add(
            DbCreditTransaction(
                id=uuid.uuid4().hex,
                user_id=user_id,
                type=type,
                amount=amount,
                model=model,
                job_id=job_id,
                reservation_id=reservation_id,
                description=description,
                meta=meta,
                created_at=now,
            )
        )


def _prior_settlement(row: DbCreditReservation) -> Settlement:
    if row.status == RESERVATION_CONSUMED:
        return Settlement(
            reservation_id=row.id,
            consumed=row.consumed_amount,
            refunded=row.refunded_amount,
            status=RESERVATION_CONSUMED,
            already_handled=True,
        )
    return Settlement(
        reservation_id=row.id,
        consumed=0,
        refunded=0,
        status=RESERVATION_RELEASED,
        already_handled=True,
    )


def _to_reservation(row: DbCreditReservation) -> Reservation:
    return Reservation(
        id=row.id,
        user_id=row.user_id,
        reserved_amount=row.reserved_amount,
        job_id=row.job_id,
        status=row.status,
        expires_at=row.expires_at,
        created_at=row.created_at,
        consumed_amount=row.consumed_amount,
        refunded_amount=row.refunded_amount,
        release_reason=row.release_reason,
        settled_at=row.settled_at,
    )


def _to_transaction(row: DbCreditTransaction) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=row.amount,
        model=row.model,
        job_id=row.job_id,
        reservation_id=row.reservation_id,
        description=row.description,
        meta=row.meta,
        created_at=row.created_at,
    )
