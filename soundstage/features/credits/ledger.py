"""
Credit ledger: balance checks, deductions, credits, refunds and daily resets.

All arithmetic goes through an AccountStore whose mutations are atomic per
account. check_credits is advisory only; deduct_credits re-checks the
balance inside its guarded update, so a stale check can never overdraw.
"""
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from soundstage.core.config import settings
from soundstage.core.errors import AccountNotFoundError, ValidationError
from soundstage.core.logging import log_event
from soundstage.features.credits.costs import cost_of, is_unlimited_for
from soundstage.features.credits.store import AccountStore, SqlAccountStore, as_utc, utcnow
from soundstage.features.plans.catalog import capabilities_for
from soundstage.models.credits import (
    Account,
    CheckReason,
    CreditCheckResult,
    DeductionResult,
    EntryType,
    LedgerEntry,
    OperationKind,
    ResetResult,
)
from soundstage.models.plan import Metered, PlanTier, VocalGender


class CreditLedger:
    def __init__(
        self,
        store: AccountStore,
        *,
        signup_credits: Optional[int] = None,
        reset_window: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.signup_credits = settings.SIGNUP_CREDITS if signup_credits is None else signup_credits
        self.reset_window = reset_window or timedelta(hours=settings.DAILY_RESET_HOURS)
        self.clock = clock or utcnow

    def ensure_account(self, account_id: str) -> Account:
        """Return the account, creating it on the free tier on first sight."""
        account = self.store.get(account_id)
        if account is not None:
            return self._checked(account)
        account = self.store.create(
            account_id,
            plan_tier=PlanTier.FREE,
            balance=self.signup_credits,
            now=self.clock(),
        )
        log_event("info", "account.created", account_id=account_id, event_type="account.created",
                  extra={"plan_tier": account.plan_tier.value, "balance": account.credit_balance})
        return self._checked(account)

    def get_account(self, account_id: str) -> Account:
        """Raises AccountNotFoundError for unknown ids."""
        account = self.store.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return self._checked(account)

    def set_plan_tier(
        self,
        account_id: str,
        plan_tier: Union[PlanTier, str],
        *,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Account:
        tier = PlanTier(plan_tier)
        account = self.store.set_plan(account_id, tier, subscription_id=subscription_id, customer_id=customer_id)
        log_event("info", "account.plan_changed", account_id=account_id, event_type="account.plan_changed",
                  extra={"plan_tier": tier.value, "subscription_id": subscription_id})
        return self._checked(account)

    def set_vocal_preference(self, account_id: str, preference: Union[VocalGender, str]) -> Account:
        """Saved default for music requests that leave vocal_gender unset."""
        try:
            gender = VocalGender(preference)
        except ValueError:
            raise ValidationError(f"Unknown vocal gender: {preference}", details={"allowed": [g.value for g in VocalGender]})
        account = self.store.set_vocal_preference(account_id, gender)
        log_event("info", "account.preferences_updated", account_id=account_id,
                  event_type="account.preferences_updated", extra={"vocal_gender_preference": gender.value})
        return self._checked(account)

    def history(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        self.get_account(account_id)
        return self.store.list_entries(account_id, limit=limit)

    def check_credits(self, account_id: str, operation_kind: Union[OperationKind, str]) -> CreditCheckResult:
        kind = OperationKind(operation_kind)
        account = self.get_account(account_id)
        required = cost_of(kind)
        if is_unlimited_for(kind, account.plan_tier):
            reason = CheckReason.UNLIMITED
            allowed = True
        elif account.credit_balance >= required:
            reason = CheckReason.SUCCESS
            allowed = True
        else:
            reason = CheckReason.INSUFFICIENT_CREDITS
            allowed = False
        return CreditCheckResult(
            allowed=allowed,
            reason=reason,
            current_balance=account.credit_balance,
            required_credits=required,
            plan_tier=account.plan_tier,
        )

    def deduct_credits(
        self,
        account_id: str,
        operation_kind: Union[OperationKind, str],
        *,
        reference: Optional[str] = None,
    ) -> DeductionResult:
        """Charge the server-side cost of `operation_kind` exactly once.

        Unlimited tiers are never charged. Otherwise the decrement only
        applies when the balance covers the whole cost; a short balance is
        reported with success=False and left untouched.
        """
        kind = OperationKind(operation_kind)
        account = self.get_account(account_id)
        cost = cost_of(kind)

        if is_unlimited_for(kind, account.plan_tier):
            log_event("info", "credits.unlimited", account_id=account_id, event_type="credits.unlimited",
                      extra={"operation_kind": kind.value, "plan_tier": account.plan_tier.value})
            return DeductionResult(
                success=True,
                new_balance=account.credit_balance,
                amount_deducted=0,
                was_unlimited=True,
                operation_kind=kind,
            )

        new_balance = self.store.try_debit(account_id, cost, operation_kind=kind, reference=reference)
        if new_balance is None:
            current = self.get_account(account_id).credit_balance
            log_event("info", "credits.insufficient", account_id=account_id, event_type="credits.insufficient",
                      error_code="insufficient_credits",
                      extra={"operation_kind": kind.value, "balance": current, "required": cost})
            return DeductionResult(
                success=False,
                new_balance=current,
                amount_deducted=0,
                was_unlimited=False,
                operation_kind=kind,
                error_code="insufficient_credits",
                error=f"Insufficient credits: {kind.value} costs {cost}, balance is {current}",
            )

        new_balance = self._checked_balance(account_id, new_balance)
        log_event("info", "credits.deducted", account_id=account_id, event_type="credits.deducted",
                  extra={"operation_kind": kind.value, "amount": cost, "balance": new_balance})
        return DeductionResult(
            success=True,
            new_balance=new_balance,
            amount_deducted=cost,
            was_unlimited=False,
            operation_kind=kind,
        )

    def credit_account(
        self,
        account_id: str,
        amount: int,
        *,
        reason: str,
        entry_type: EntryType = EntryType.CREDIT,
    ) -> int:
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", details={"amount": amount})
        new_balance = self.store.credit(account_id, amount, entry_type=entry_type, reference=reason)
        log_event("info", "credits.added", account_id=account_id, event_type="credits.added",
                  extra={"amount": amount, "balance": new_balance, "reason": reason})
        return self._checked_balance(account_id, new_balance)

    def refund_credits(self, account_id: str, deduction: DeductionResult, *, reason: str) -> int:
        """Give back exactly what `deduction` took; unlimited or failed deductions refund nothing."""
        if not deduction.success or deduction.was_unlimited or deduction.amount_deducted <= 0:
            return self.get_account(account_id).credit_balance
        new_balance = self.store.credit(
            account_id,
            deduction.amount_deducted,
            entry_type=EntryType.REFUND,
            operation_kind=deduction.operation_kind,
            reference=reason,
        )
        log_event("warning", "credits.refunded", account_id=account_id, event_type="credits.refunded",
                  extra={"operation_kind": deduction.operation_kind.value,
                         "amount": deduction.amount_deducted, "balance": new_balance, "reason": reason})
        return self._checked_balance(account_id, new_balance)

    def reset_daily_allowance(self, account_id: str, now: Optional[datetime] = None) -> ResetResult:
        """Top a metered account back up to its allowance once per window.

        The reset sets the balance to the allowance (it does not add to it) and
        is applied with a compare-and-set on last_reset_at, so concurrent
        calls inside one window reset at most once.
        """
        now = as_utc(now) if now is not None else self.clock()
        account = self.get_account(account_id)
        allowance = capabilities_for(account.plan_tier).daily_allowance
        if not isinstance(allowance, Metered):
            return ResetResult(balance=account.credit_balance, reset_occurred=False, hours_until_reset=None)

        applied, account = self.store.reset_if_due(
            account_id,
            plan_tier=account.plan_tier,
            allowance=allowance.credits,
            now=now,
            window=self.reset_window,
        )
        account = self._checked(account)
        if applied:
            log_event("info", "credits.reset", account_id=account_id, event_type="credits.reset",
                      extra={"balance": account.credit_balance})
            return ResetResult(balance=account.credit_balance, reset_occurred=True, hours_until_reset=None)

        remaining = (account.last_reset_at + self.reset_window) - now
        hours = max(0.0, round(remaining.total_seconds() / 3600, 2))
        return ResetResult(balance=account.credit_balance, reset_occurred=False, hours_until_reset=hours)

    def apply_payment(
        self,
        *,
        payment_id: str,
        account_id: str,
        credits: int,
        bundle_id: Optional[str],
        source: str,
        provider_event_id: Optional[str] = None,
    ):
        """Credit a payment once per payment_id. Returns (applied, balance)."""
        if credits <= 0:
            raise ValidationError("Payment credits must be positive", details={"credits": credits})
        applied, balance = self.store.apply_payment(
            payment_id=payment_id,
            account_id=account_id,
            credits=credits,
            bundle_id=bundle_id,
            source=source,
            provider_event_id=provider_event_id,
        )
        return applied, self._checked_balance(account_id, balance)

    def _checked(self, account: Account) -> Account:
        if account.credit_balance >= 0:
            return account
        balance = self._checked_balance(account.account_id, account.credit_balance)
        return account.model_copy(update={"credit_balance": balance})

    def _checked_balance(self, account_id: str, balance: int) -> int:
        if balance >= 0:
            return balance
        log_event("error", "ledger.invariant_violation", account_id=account_id,
                  event_type="ledger.invariant_violation", error_code="negative_balance",
                  extra={"balance": balance})
        return max(0, self.store.clamp_negative(account_id))


_ledger: Optional[CreditLedger] = None


def get_ledger() -> CreditLedger:
    """Process-wide ledger over the SQL store (FastAPI dependency)."""
    global _ledger
    if _ledger is None:
        _ledger = CreditLedger(SqlAccountStore())
    return _ledger

