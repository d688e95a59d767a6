from fastapi import Depends

from soundstage.core.auth import get_current_user_id
from soundstage.features.credits.ledger import CreditLedger, get_ledger
from soundstage.features.generation.dispatch import GenerationDispatcher
from soundstage.features.generation.gateway import GenerationGateway, get_gateway
from soundstage.features.generation.tasks import SqlTaskStore
from soundstage.models.credits import Account


def get_current_account(
    account_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
) -> Account:
    """Authenticated account, created on the free tier the first time it is seen."""
    return ledger.ensure_account(account_id)


def get_dispatcher(
    ledger: CreditLedger = Depends(get_ledger),
    gateway: GenerationGateway = Depends(get_gateway),
) -> GenerationDispatcher:
    return GenerationDispatcher(ledger, gateway, SqlTaskStore())
