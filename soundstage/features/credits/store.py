"""
Account store: the only code that mutates balances.

Two implementations share one narrow interface so the ledger stays
storage-agnostic:

- SqlAccountStore: guarded single-statement UPDATEs (`balance >= amount`,
  `last_reset_at <= threshold`) and a unique `payment_id` row written in the
  same transaction as the credit it pays for.
- InMemoryAccountStore: a process-local map with one lock per account, used
  by tests and single-process deployments.

Every mutation appends a credit_ledger entry inside the same transaction
(or under the same lock) as the balance change.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from soundstage.core.database import accounts, credit_ledger, get_db_session, payment_events
from soundstage.core.errors import AccountNotFoundError
from soundstage.models.credits import Account, EntryType, LedgerEntry, OperationKind
from soundstage.models.plan import PlanTier, VocalGender


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountStore(Protocol):
    def get(self, account_id: str) -> Optional[Account]:
        ...

    def create(self, account_id: str, *, plan_tier: PlanTier, balance: int, now: datetime) -> Account:
        """Insert the account unless it exists; return the stored row either way."""
        ...

    def try_debit(
        self,
        account_id: str,
        amount: int,
        *,
        operation_kind: Optional[OperationKind] = None,
        reference: Optional[str] = None,
    ) -> Optional[int]:
        """Subtract `amount` iff balance >= amount. Returns the new balance, or None if short."""
        ...

    def credit(
        self,
        account_id: str,
        amount: int,
        *,
        entry_type: EntryType,
        operation_kind: Optional[OperationKind] = None,
        reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        ...

    def reset_if_due(
        self,
        account_id: str,
        *,
        plan_tier: PlanTier,
        allowance: int,
        now: datetime,
        window: timedelta,
    ) -> Tuple[bool, Account]:
        """Compare-and-set reset: applies only if last_reset_at <= now - window."""
        ...

    def set_plan(
        self,
        account_id: str,
        plan_tier: PlanTier,
        *,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Account:
        ...

    def set_vocal_preference(self, account_id: str, preference: VocalGender) -> Account:
        ...

    def apply_payment(
        self,
        *,
        payment_id: str,
        account_id: str,
        credits: int,
        bundle_id: Optional[str],
        source: str,
        provider_event_id: Optional[str] = None,
    ) -> Tuple[bool, int]:
        """Record the payment and credit it atomically. Returns (applied, balance)."""
        ...

    def clamp_negative(self, account_id: str) -> int:
        ...

    def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        ...


def _account_from_row(row) -> Account:
    return Account(
        account_id=row.account_id,
        plan_tier=PlanTier(row.plan_tier),
        credit_balance=row.credit_balance,
        last_reset_at=as_utc(row.last_reset_at),
        payment_customer_id=row.payment_customer_id,
        subscription_id=row.subscription_id,
        vocal_gender_preference=VocalGender(row.vocal_gender_preference),
    )


class SqlAccountStore:
    """SQLAlchemy Core implementation over the accounts/credit_ledger/payment_events tables."""

    def _select_account(self, session, account_id: str):
        return session.execute(
            select(accounts).where(accounts.c.account_id == account_id)
        ).first()

    def _balance(self, session, account_id: str) -> int:
        return session.execute(
            select(accounts.c.credit_balance).where(accounts.c.account_id == account_id)
        ).scalar_one()

    def _append_entry(self, session, account_id: str, entry_type: EntryType, amount: int, balance_after: int,
                      operation_kind: Optional[OperationKind] = None, reference: Optional[str] = None,
                      details: Optional[Dict[str, Any]] = None) -> None:
        session.execute(
            insert(credit_ledger).values(
                account_id=account_id,
                entry_type=entry_type.value,
                amount=amount,
                balance_after=balance_after,
                operation_kind=operation_kind.value if operation_kind else None,
                reference=reference,
                details=details or {},
                created_at=utcnow(),
            )
        )

    def get(self, account_id: str) -> Optional[Account]:
        with get_db_session() as session:
            row = self._select_account(session, account_id)
            return _account_from_row(row) if row else None

    def create(self, account_id: str, *, plan_tier: PlanTier, balance: int, now: datetime) -> Account:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(accounts).values(
                        account_id=account_id,
                        plan_tier=plan_tier.value,
                        credit_balance=balance,
                        last_reset_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Concurrent first request for the same account won the insert
            pass
        account = self.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def try_debit(self, account_id, amount, *, operation_kind=None, reference=None):
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .where(accounts.c.credit_balance >= amount)
                .values(credit_balance=accounts.c.credit_balance - amount, updated_at=utcnow())
            )
            if result.rowcount == 0:
                if self._select_account(session, account_id) is None:
                    raise AccountNotFoundError(account_id)
                return None
            new_balance = self._balance(session, account_id)
            self._append_entry(session, account_id, EntryType.DEDUCT, -amount, new_balance,
                               operation_kind=operation_kind, reference=reference)
            return new_balance

    def credit(self, account_id, amount, *, entry_type, operation_kind=None, reference=None, details=None):
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .values(credit_balance=accounts.c.credit_balance + amount, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
            new_balance = self._balance(session, account_id)
            self._append_entry(session, account_id, entry_type, amount, new_balance,
                               operation_kind=operation_kind, reference=reference, details=details)
            return new_balance

    def reset_if_due(self, account_id, *, plan_tier, allowance, now, window):
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .where(accounts.c.plan_tier == plan_tier.value)
                .where(accounts.c.last_reset_at <= now - window)
                .values(credit_balance=allowance, last_reset_at=now, updated_at=now)
            )
            applied = result.rowcount == 1
            if applied:
                self._append_entry(session, account_id, EntryType.RESET, allowance, allowance,
                                   details={"allowance": allowance})
            row = self._select_account(session, account_id)
            if row is None:
                raise AccountNotFoundError(account_id)
            return applied, _account_from_row(row)

    def set_plan(self, account_id, plan_tier, *, subscription_id=None, customer_id=None):
        values: Dict[str, Any] = {"plan_tier": plan_tier.value, "updated_at": utcnow()}
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        if customer_id is not None:
            values["payment_customer_id"] = customer_id
        with get_db_session() as session:
            result = session.execute(
                update(accounts).where(accounts.c.account_id == account_id).values(**values)
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
            return _account_from_row(self._select_account(session, account_id))

    def set_vocal_preference(self, account_id, preference):
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .values(vocal_gender_preference=preference.value, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
            return _account_from_row(self._select_account(session, account_id))

    def apply_payment(self, *, payment_id, account_id, credits, bundle_id, source, provider_event_id=None):
        try:
            with get_db_session() as session:
                # Unique payment_id makes the second delivery fail here, before any credit
                session.execute(
                    insert(payment_events).values(
                        payment_id=payment_id,
                        account_id=account_id,
                        bundle_id=bundle_id,
                        credits=credits,
                        source=source,
                        provider_event_id=provider_event_id,
                        created_at=utcnow(),
                    )
                )
                result = session.execute(
                    update(accounts)
                    .where(accounts.c.account_id == account_id)
                    .values(credit_balance=accounts.c.credit_balance + credits, updated_at=utcnow())
                )
                if result.rowcount == 0:
                    raise AccountNotFoundError(account_id)
                new_balance = self._balance(session, account_id)
                self._append_entry(session, account_id, EntryType.PAYMENT, credits, new_balance,
                                   reference=payment_id, details={"bundle_id": bundle_id, "source": source})
                return True, new_balance
        except IntegrityError:
            account = self.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return False, account.credit_balance

    def clamp_negative(self, account_id: str) -> int:
        with get_db_session() as session:
            session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .where(accounts.c.credit_balance < 0)
                .values(credit_balance=0, updated_at=utcnow())
            )
            return self._balance(session, account_id)

    def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        with get_db_session() as session:
            rows = session.execute(
                select(credit_ledger)
                .where(credit_ledger.c.account_id == account_id)
                .order_by(credit_ledger.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            LedgerEntry(
                account_id=row.account_id,
                entry_type=EntryType(row.entry_type),
                amount=row.amount,
                balance_after=row.balance_after,
                operation_kind=OperationKind(row.operation_kind) if row.operation_kind else None,
                reference=row.reference,
                details=row.details or {},
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]


class InMemoryAccountStore:
    """Process-local store; one lock per account serializes every mutation."""

    def __init__(self):
        self._accounts: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._payments: Dict[str, Dict[str, Any]] = {}
        self._entries: Dict[str, List[LedgerEntry]] = {}

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def _row(self, account_id: str) -> Dict[str, Any]:
        row = self._accounts.get(account_id)
        if row is None:
            raise AccountNotFoundError(account_id)
        return row

    def _append_entry(self, account_id, entry_type, amount, balance_after, operation_kind=None,
                      reference=None, details=None) -> None:
        self._entries.setdefault(account_id, []).append(
            LedgerEntry(
                account_id=account_id,
                entry_type=entry_type,
                amount=amount,
                balance_after=balance_after,
                operation_kind=operation_kind,
                reference=reference,
                details=details or {},
                created_at=utcnow(),
            )
        )

    def get(self, account_id: str) -> Optional[Account]:
        row = self._accounts.get(account_id)
        return Account(**row) if row else None

    def create(self, account_id, *, plan_tier, balance, now):
        with self._lock_for(account_id):
            if account_id not in self._accounts:
                self._accounts[account_id] = {
                    "account_id": account_id,
                    "plan_tier": plan_tier,
                    "credit_balance": balance,
                    "last_reset_at": now,
                    "payment_customer_id": None,
                    "subscription_id": None,
                    "vocal_gender_preference": VocalGender.MALE,
                }
            return Account(**self._accounts[account_id])

    def try_debit(self, account_id, amount, *, operation_kind=None, reference=None):
        with self._lock_for(account_id):
            row = self._row(account_id)
            if row["credit_balance"] < amount:
                return None
            row["credit_balance"] -= amount
            self._append_entry(account_id, EntryType.DEDUCT, -amount, row["credit_balance"],
                               operation_kind=operation_kind, reference=reference)
            return row["credit_balance"]

    def credit(self, account_id, amount, *, entry_type, operation_kind=None, reference=None, details=None):
        with self._lock_for(account_id):
            row = self._row(account_id)
            row["credit_balance"] += amount
            self._append_entry(account_id, entry_type, amount, row["credit_balance"],
                               operation_kind=operation_kind, reference=reference, details=details)
            return row["credit_balance"]

    def reset_if_due(self, account_id, *, plan_tier, allowance, now, window):
        with self._lock_for(account_id):
            row = self._row(account_id)
            applied = row["plan_tier"] == plan_tier and row["last_reset_at"] <= now - window
            if applied:
                row["credit_balance"] = allowance
                row["last_reset_at"] = now
                self._append_entry(account_id, EntryType.RESET, allowance, allowance,
                                   details={"allowance": allowance})
            return applied, Account(**row)

    def set_plan(self, account_id, plan_tier, *, subscription_id=None, customer_id=None):
        with self._lock_for(account_id):
            row = self._row(account_id)
            row["plan_tier"] = plan_tier
            if subscription_id is not None:
                row["subscription_id"] = subscription_id
            if customer_id is not None:
                row["payment_customer_id"] = customer_id
            return Account(**row)

    def set_vocal_preference(self, account_id, preference):
        with self._lock_for(account_id):
            row = self._row(account_id)
            row["vocal_gender_preference"] = preference
            return Account(**row)

    def apply_payment(self, *, payment_id, account_id, credits, bundle_id, source, provider_event_id=None):
        # Payments for one account serialize on its lock; the id check happens under it
        with self._lock_for(account_id):
            row = self._row(account_id)
            with self._locks_guard:
                if payment_id in self._payments:
                    return False, row["credit_balance"]
                self._payments[payment_id] = {
                    "account_id": account_id,
                    "bundle_id": bundle_id,
                    "credits": credits,
                    "source": source,
                    "provider_event_id": provider_event_id,
                }
            row["credit_balance"] += credits
            self._append_entry(account_id, EntryType.PAYMENT, credits, row["credit_balance"],
                               reference=payment_id, details={"bundle_id": bundle_id, "source": source})
            return True, row["credit_balance"]

    def clamp_negative(self, account_id: str) -> int:
        with self._lock_for(account_id):
            row = self._row(account_id)
            if row["credit_balance"] < 0:
                row["credit_balance"] = 0
            return row["credit_balance"]

    def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        with self._lock_for(account_id):
            entries = self._entries.get(account_id, [])
            return entries[::-1][:limit]
