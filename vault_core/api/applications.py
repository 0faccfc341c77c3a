"""
Signup, verification and sign-in endpoints
"""

from typing import Any, Dict
from fastapi import APIRouter, Depends, status

from .deps import get_vault_system
from .schemas import AuthenticateRequest, PinRequest, SecretKeyRequest, SignUpRequest
from ..lifecycle import GateDecision
from ..profiles import Profile
from ..system import VaultSystem


router = APIRouter()


def profile_payload(profile: Profile) -> Dict[str, Any]:
    return {
        "user_id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "email_verified": profile.email_verified,
        "qr_verified": profile.qr_verified,
        "can_transact": profile.can_transact,
        "has_pin": profile.has_pin
    }


def gate_payload(decision: GateDecision) -> Dict[str, Any]:
    return {
        "may_authenticate": decision.may_authenticate,
        "may_transact": decision.may_transact,
        "state": decision.state.value,
        "reason": decision.reason.name if decision.reason else None,
        "message": decision.message,
        "bypassed": decision.bypassed
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def sign_up(request: SignUpRequest, system: VaultSystem = Depends(get_vault_system)):
    """Create a profile and a pending account application"""
    result = system.onboarding.sign_up(request.email, request.full_name, request.account_type, request.pin)
    return {
        "user_id": result.profile.id,
        "application_id": result.application.id,
        "status": result.application.status.value,
        "secret_sent": result.secret_sent,
        "message": "Application submitted successfully"
    }


@router.post("/{user_id}/verify-email")
async def verify_email(user_id: str, system: VaultSystem = Depends(get_vault_system)):
    return profile_payload(system.onboarding.verify_email(user_id))


@router.post("/{user_id}/verify-secret")
async def verify_secret_key(user_id: str, request: SecretKeyRequest,
                            system: VaultSystem = Depends(get_vault_system)):
    """Echo the emailed secret key to prove the address and unlock sign-in"""
    return profile_payload(system.onboarding.verify_secret_key(user_id, request.secret_key))


@router.post("/{user_id}/resend-secret")
async def resend_secret_key(user_id: str, system: VaultSystem = Depends(get_vault_system)):
    return {"sent": system.onboarding.resend_secret_key(user_id)}


@router.post("/{user_id}/pin")
async def set_pin(user_id: str, request: PinRequest, system: VaultSystem = Depends(get_vault_system)):
    return profile_payload(system.onboarding.set_pin(user_id, request.pin))


@router.get("/{user_id}/status")
async def get_status(user_id: str, system: VaultSystem = Depends(get_vault_system)):
    """Current gate decision for the user"""
    return gate_payload(system.onboarding.status(user_id))


@router.post("/{user_id}/authenticate")
async def authenticate(user_id: str, request: AuthenticateRequest,
                       system: VaultSystem = Depends(get_vault_system)):
    return gate_payload(system.onboarding.authenticate(user_id, request.pin))


@router.get("/{user_id}/alerts")
async def get_alerts(user_id: str, unread_only: bool = False,
                     system: VaultSystem = Depends(get_vault_system)):
    alerts = system.notifications.get_alerts(user_id, unread_only=unread_only)
    return {
        "alerts": [alert.to_dict() for alert in alerts],
        "unread": system.notifications.unread_count(user_id)
    }
