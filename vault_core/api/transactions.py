"""
Transaction posting endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_vault_system
from .schemas import PostTransactionRequest
from ..errors import ValidationError
from ..system import VaultSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def post_transaction(request: PostTransactionRequest, system: VaultSystem = Depends(get_vault_system)):
    """Post a credit or debit, immediately or as a pending transaction"""
    if not request.source.requires_clearance:
        raise ValidationError("Admin adjustments are posted through /admin/accounts/{account_id}/adjustments")
    transaction = system.poster.post(
        account_id=request.account_id,
        amount=request.amount,
        direction=request.direction,
        immediate=request.immediate,
        description=request.description,
        source=request.source,
        actor_id=request.actor_id
    )
    return transaction.to_dict()


@router.get("/pending")
async def list_pending(system: VaultSystem = Depends(get_vault_system)):
    return {"transactions": [t.to_dict() for t in system.poster.list_pending()]}


@router.post("/complete-due")
async def complete_due_transactions(system: VaultSystem = Depends(get_vault_system)):
    """Settle every pending transaction whose auto-complete time has passed"""
    return system.poster.complete_due_transactions()


@router.get("/users/{user_id}")
async def get_user_transactions(user_id: str, system: VaultSystem = Depends(get_vault_system)):
    system.profiles.require_profile(user_id)
    return {"user_id": user_id, "transactions": [t.to_dict() for t in system.poster.get_user_transactions(user_id)]}


@router.get("/accounts/{account_id}")
async def get_account_transactions(account_id: str, system: VaultSystem = Depends(get_vault_system)):
    account = system.accounts.require_account(account_id)
    return {
        "account_id": account.id,
        "account_number": account.account_number,
        "balance": str(account.balance),
        "available_balance": str(account.available_balance),
        "transactions": [t.to_dict() for t in system.poster.get_account_transactions(account_id)]
    }


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, system: VaultSystem = Depends(get_vault_system)):
    return system.poster.require_transaction(transaction_id).to_dict()
