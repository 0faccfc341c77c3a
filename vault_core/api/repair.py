"""
Consistency audit and repair endpoints
"""

from dataclasses import asdict
from typing import Any, Dict
from fastapi import APIRouter, Depends

from .deps import get_vault_system
from .schemas import BulkRepairRequest, RepairRequest
from ..auditor import RepairResult, UserAuditReport
from ..system import VaultSystem


router = APIRouter()


def report_payload(system: VaultSystem, report: UserAuditReport) -> Dict[str, Any]:
    return {
        "user_id": report.user_id,
        "email": report.email,
        "full_name": report.full_name,
        "email_verified": report.email_verified,
        "qr_verified": report.qr_verified,
        "can_transact": report.can_transact,
        "application_id": report.application_id,
        "application_status": report.application_status.value if report.application_status else None,
        "application_qr_verified": report.application_qr_verified,
        "has_active_account": report.has_active_account,
        "state": report.state.value,
        "issues": [
            {"code": i.code.name, "severity": i.severity.value, "description": i.description}
            for i in report.issues
        ],
        "suggested_repairs": [a.value for a in system.auditor.suggested_repairs(report)]
    }


def result_payload(result: RepairResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["action"] = result.action.value if result.action else None
    return payload


@router.get("/users")
async def audit_all(only_with_issues: bool = False, system: VaultSystem = Depends(get_vault_system)):
    """Audit every user; optionally only those with at least one issue"""
    reports = system.auditor.audit_all(only_with_issues=only_with_issues)
    return {"users": [report_payload(system, r) for r in reports], "total": len(reports)}


@router.get("/users/{user_id}")
async def audit_user(user_id: str, system: VaultSystem = Depends(get_vault_system)):
    return report_payload(system, system.auditor.audit_user(user_id))


@router.post("/users/{user_id}")
async def repair_user(user_id: str, request: RepairRequest, system: VaultSystem = Depends(get_vault_system)):
    return result_payload(system.auditor.repair(user_id, request.action, request.actor_id))


@router.post("/bulk")
async def bulk_repair(request: BulkRepairRequest, system: VaultSystem = Depends(get_vault_system)):
    results = system.auditor.bulk_repair(request.user_ids, request.actor_id, request.actions)
    return {
        "results": [result_payload(r) for r in results],
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success)
    }
