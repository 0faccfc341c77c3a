"""
Admin endpoints (approvals, transact grants, admin action log)
"""

from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import get_vault_system
from .schemas import AdminAdjustmentRequest, AdminDecisionRequest, BulkDecisionRequest
from ..lifecycle import ApplicationDecision
from ..system import VaultSystem
from ..transactions import TransactionSource


router = APIRouter()


def decision_payload(decision: ApplicationDecision):
    return {
        "application": decision.application.to_dict(),
        "account": decision.account.to_dict() if decision.account else None,
        "transact_granted": decision.transact_granted
    }


# Applications

@router.get("/applications/pending")
async def list_pending_applications(system: VaultSystem = Depends(get_vault_system)):
    return {"applications": [a.to_dict() for a in system.approvals.list_pending_applications()]}


@router.post("/applications/{application_id}/approve")
async def approve_application(application_id: str, request: AdminDecisionRequest,
                              system: VaultSystem = Depends(get_vault_system)):
    """Approve a pending application and open its first account"""
    return decision_payload(system.approvals.approve_application(application_id, request.admin_id))


@router.post("/applications/{application_id}/reject")
async def reject_application(application_id: str, request: AdminDecisionRequest,
                             system: VaultSystem = Depends(get_vault_system)):
    return decision_payload(system.approvals.reject_application(application_id, request.admin_id, request.reason))


@router.post("/users/{user_id}/grant-transact")
async def grant_transact(user_id: str, request: AdminDecisionRequest,
                         system: VaultSystem = Depends(get_vault_system)):
    profile = system.onboarding.grant_transact(user_id, request.admin_id)
    return {"user_id": profile.id, "can_transact": profile.can_transact}


# Transactions

@router.post("/accounts/{account_id}/adjustments", status_code=status.HTTP_201_CREATED)
async def post_adjustment(account_id: str, request: AdminAdjustmentRequest,
                          system: VaultSystem = Depends(get_vault_system)):
    """Manual credit or debit by an admin; posted whatever the owner's verification state"""
    transaction = system.poster.post(
        account_id=account_id,
        amount=request.amount,
        direction=request.direction,
        description=request.description or "Admin adjustment",
        source=TransactionSource.ADMIN,
        actor_id=request.admin_id
    )
    return transaction.to_dict()


@router.get("/transactions/pending")
async def list_pending_transactions(system: VaultSystem = Depends(get_vault_system)):
    return {"transactions": [t.to_dict() for t in system.approvals.list_pending_transactions()]}


@router.post("/transactions/bulk-approve")
async def bulk_approve(request: BulkDecisionRequest, system: VaultSystem = Depends(get_vault_system)):
    outcomes = system.approvals.bulk_approve(request.transaction_ids, request.admin_id)
    return {"results": [asdict(o) for o in outcomes]}


@router.post("/transactions/bulk-reject")
async def bulk_reject(request: BulkDecisionRequest, system: VaultSystem = Depends(get_vault_system)):
    outcomes = system.approvals.bulk_reject(request.transaction_ids, request.admin_id, request.reason)
    return {"results": [asdict(o) for o in outcomes]}


@router.post("/transactions/{transaction_id}/approve")
async def approve_transaction(transaction_id: str, request: AdminDecisionRequest,
                              system: VaultSystem = Depends(get_vault_system)):
    """Apply a pending transaction; a second approval of the same one is a 409"""
    return system.approvals.approve(transaction_id, request.admin_id).to_dict()


@router.post("/transactions/{transaction_id}/reject")
async def reject_transaction(transaction_id: str, request: AdminDecisionRequest,
                             system: VaultSystem = Depends(get_vault_system)):
    return system.approvals.reject(transaction_id, request.admin_id, request.reason).to_dict()


# Admin action log

@router.get("/audit-log")
async def get_audit_log(limit: Optional[int] = 100, system: VaultSystem = Depends(get_vault_system)):
    events = system.audit_trail.get_all_events(limit=limit)
    return {"events": [e.to_dict() for e in events], "total": system.audit_trail.count_events()}


@router.get("/audit-log/integrity")
async def verify_audit_integrity(system: VaultSystem = Depends(get_vault_system)):
    return system.audit_trail.verify_integrity()
