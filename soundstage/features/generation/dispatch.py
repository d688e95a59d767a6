"""
Paid generation dispatch and task resolution.

Order for every paid request:
1. Entitlement guard (no side effects)
2. Ledger deduction (atomic, server-side cost)
3. Gateway submit (network I/O, after the ledger mutation has committed)
4. Task record

A synchronous gateway failure, or a task record that cannot be written,
after a successful deduction refunds the deduction when
REFUND_ON_GATEWAY_FAILURE is on. Tasks that fail later, after
the gateway accepted them, are not refunded.
"""
import hmac
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from soundstage.core.config import settings
from soundstage.core.errors import ConflictError, ForbiddenError, GatewayError, InsufficientCreditsError, NotFoundError
from soundstage.core.logging import log_event
from soundstage.features.credits.costs import cost_of
from soundstage.features.credits.ledger import CreditLedger
from soundstage.features.entitlements.guard import enforce_request
from soundstage.features.generation.gateway import GenerationGateway, GenerationGatewayError
from soundstage.models.credits import DeductionResult
from soundstage.models.generation import DispatchResult, GenerationRequest, GenerationTask, TaskStatus


class GenerationDispatcher:
    def __init__(
        self,
        ledger: CreditLedger,
        gateway: GenerationGateway,
        tasks,
        *,
        refund_on_failure: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.tasks = tasks
        self.refund_on_failure = (
            settings.REFUND_ON_GATEWAY_FAILURE if refund_on_failure is None else refund_on_failure
        )

    def dispatch_generation(self, account_id: str, request: GenerationRequest) -> DispatchResult:
        kind = request.operation_kind
        account = self.ledger.get_account(account_id)

        enforce_request(account.plan_tier, request)
        request = request.with_account_defaults(account)

        deduction = self.ledger.deduct_credits(account_id, kind)
        if not deduction.success:
            raise InsufficientCreditsError(
                deduction.error or "Insufficient credits",
                balance=deduction.new_balance,
                required=cost_of(kind),
                plan_tier=account.plan_tier.value,
            )

        try:
            handle = self.gateway.submit(request)
        except GenerationGatewayError as e:
            raise self._failed_after_charge(account_id, deduction, "generation.gateway_failed", e)

        try:
            task = self.tasks.create(
                GenerationTask(
                    task_id=handle.task_id,
                    account_id=account_id,
                    operation_kind=kind,
                    status=handle.status,
                    credits_charged=deduction.amount_deducted,
                    result=handle.result,
                )
            )
        except (ConflictError, SQLAlchemyError) as e:
            raise self._failed_after_charge(account_id, deduction, "generation.task_record_failed", e)

        log_event(
            "info",
            "generation.dispatched",
            account_id=account_id,
            event_type="generation.dispatched",
            extra={
                "operation_kind": kind.value,
                "task_id": task.task_id,
                "amount": deduction.amount_deducted,
                "was_unlimited": deduction.was_unlimited,
            },
        )
        return DispatchResult(
            task_id=task.task_id,
            status=task.status,
            operation_kind=kind,
            credits_charged=deduction.amount_deducted,
            balance=deduction.new_balance,
            was_unlimited=deduction.was_unlimited,
        )

    def _failed_after_charge(
        self, account_id: str, deduction: DeductionResult, event: str, cause: Exception
    ) -> GatewayError:
        """Refund (when enabled) a deduction whose dispatch did not go through; returns the error to raise."""
        kind = deduction.operation_kind
        balance = deduction.new_balance
        refunded = False
        if self.refund_on_failure and deduction.amount_deducted > 0:
            balance = self.ledger.refund_credits(account_id, deduction, reason=f"dispatch_failure:{kind.value}")
            refunded = True
        log_event(
            "error",
            event,
            account_id=account_id,
            event_type=event,
            error_code="gateway_error",
            extra={
                "operation_kind": kind.value,
                "refunded": refunded,
                "amount": deduction.amount_deducted,
                "error_message": str(cause),
            },
        )
        return GatewayError(
            "Generation service is unavailable",
            details={
                "operation_kind": kind.value,
                "credits_refunded": deduction.amount_deducted if refunded else 0,
                "balance": balance,
            },
        )

    def get_task(self, task_id: str, account_id: Optional[str] = None) -> GenerationTask:
        task = self.tasks.get(task_id)
        # Other accounts' tasks look exactly like missing ones
        if task is None or (account_id is not None and task.account_id != account_id):
            raise NotFoundError(f"Task not found: {task_id}", details={"task_id": task_id})
        return task

    def resolve_task(
        self,
        task_id: str,
        status: Union[TaskStatus, str],
        *,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> GenerationTask:
        """Apply a gateway status report. Terminal tasks are left as they are."""
        status = TaskStatus(status)
        task = self.get_task(task_id)
        if task.status.is_terminal:
            if task.status != status:
                log_event("warning", "generation.terminal_update_ignored", account_id=task.account_id,
                          event_type="generation.terminal_update_ignored",
                          extra={"task_id": task_id, "status": task.status.value, "reported": status.value})
            return task

        applied = self.tasks.update_status(task_id, status, result=result, error=error)
        if applied and status.is_terminal:
            event = "generation.completed" if status == TaskStatus.COMPLETE else "generation.failed"
            log_event("info", event, account_id=task.account_id, event_type=event,
                      extra={"task_id": task_id, "operation_kind": task.operation_kind.value})
        return self.get_task(task_id)

    def refresh_task(self, task_id: str, account_id: Optional[str] = None) -> GenerationTask:
        """Return the task, polling the gateway first while it is still running."""
        task = self.get_task(task_id, account_id)
        if task.status.is_terminal:
            return task
        try:
            handle = self.gateway.fetch_status(task_id)
        except GenerationGatewayError as e:
            log_event("warning", "generation.poll_failed", account_id=task.account_id,
                      event_type="generation.poll_failed", error_code="gateway_error",
                      extra={"task_id": task_id, "error_message": str(e)})
            return task
        if handle.status == task.status and handle.result is None:
            return task
        error = "Generation failed" if handle.status == TaskStatus.FAILED else None
        return self.resolve_task(task_id, handle.status, result=handle.result, error=error)


def verify_callback_secret(provided: Optional[str]) -> None:
    expected = settings.GENERATION_CALLBACK_SECRET
    if not expected:
        raise ForbiddenError("Generation callbacks are not configured")
    if not provided or not hmac.compare_digest(provided, expected):
        raise ForbiddenError("Invalid callback secret")

