"""
Joint account request endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from .deps import get_vault_system
from .schemas import AdminDecisionRequest, OtpRequest, RecordDepositRequest, StartJointRequest, SubmitJointRequest
from ..joint_accounts import JointStatus, PartnerDetails
from ..system import VaultSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_request(request: StartJointRequest, system: VaultSystem = Depends(get_vault_system)):
    return system.joint_accounts.start_request(request.account_id, request.requester_user_id).to_dict()


@router.get("")
async def list_requests(status: Optional[JointStatus] = None, system: VaultSystem = Depends(get_vault_system)):
    return {"requests": [r.to_dict() for r in system.joint_accounts.list_requests(status)]}


@router.get("/{request_id}")
async def get_request(request_id: str, system: VaultSystem = Depends(get_vault_system)):
    request = system.joint_accounts.require_request(request_id)
    return {**request.to_dict(), "deposit_preview": str(system.joint_accounts.deposit_preview(request_id))}


@router.post("/{request_id}/partner")
async def submit_partner_details(
    request_id: str,
    full_name: str = Form(...),
    email: str = Form(...),
    phone: str = Form(...),
    ssn: str = Form(...),
    address: str = Form(...),
    id_document: Optional[UploadFile] = File(None),
    drivers_license: Optional[UploadFile] = File(None),
    system: VaultSystem = Depends(get_vault_system)
):
    """Partner details with optional identity document uploads"""
    partner = PartnerDetails(full_name=full_name, email=email, phone=phone, ssn=ssn, address=address)
    id_file = (id_document.filename, await id_document.read()) if id_document else None
    license_file = (drivers_license.filename, await drivers_license.read()) if drivers_license else None
    return system.joint_accounts.submit_partner_details(request_id, partner, id_file, license_file).to_dict()


@router.post("/{request_id}/submit")
async def submit_request(request_id: str, request: SubmitJointRequest,
                         system: VaultSystem = Depends(get_vault_system)):
    """Accept the terms and freeze the security deposit amount"""
    return system.joint_accounts.submit(request_id, request.terms_accepted).to_dict()


@router.post("/{request_id}/verify-otp")
async def verify_otp(request_id: str, request: OtpRequest, system: VaultSystem = Depends(get_vault_system)):
    return system.joint_accounts.verify_otp(request_id, request.code).to_dict()


@router.post("/{request_id}/deposit")
async def record_deposit(request_id: str, request: RecordDepositRequest,
                         system: VaultSystem = Depends(get_vault_system)):
    return system.joint_accounts.record_deposit(request_id, request.transaction_id).to_dict()


@router.post("/{request_id}/approve")
async def approve_request(request_id: str, request: AdminDecisionRequest,
                          system: VaultSystem = Depends(get_vault_system)):
    return system.joint_accounts.approve(request_id, request.admin_id).to_dict()


@router.post("/{request_id}/reject")
async def reject_request(request_id: str, request: AdminDecisionRequest,
                         system: VaultSystem = Depends(get_vault_system)):
    return system.joint_accounts.reject(request_id, request.admin_id, request.reason).to_dict()
