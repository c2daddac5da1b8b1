"""
Credential endpoints: PIN management and standalone code checks
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import CodeRequest, SetPinRequest, StepUpConfigRequest
from ..errors import ValidationError
from ..verification import StepUpKind


router = APIRouter()


def _kind(value: str) -> StepUpKind:
    try:
        return StepUpKind(value.replace("-", "_"))
    except ValueError:
        raise ValidationError(f"Unknown step-up factor: {value}")


@router.put("/pin")
def set_pin(
    request: SetPinRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Set or replace the caller's transaction PIN"""
    system.verification.set_pin(user_id, request.pin)
    return {"message": "PIN updated"}


@router.post("/pin/verify")
def verify_pin(
    request: CodeRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"valid": system.verification.verify_pin(user_id, request.code)}


@router.post("/cot/verify")
def verify_cot(
    request: CodeRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"valid": system.verification.verify_step_up_code(user_id, StepUpKind.COT, request.code)}


@router.post("/secure-id/verify")
def verify_secure_id(
    request: CodeRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"valid": system.verification.verify_step_up_code(user_id, StepUpKind.SECURE_ID, request.code)}


@router.get("/step-up")
def get_step_up(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    settings = system.verification.get_step_up_settings(user_id)
    return {"cot_enabled": settings.cot_enabled, "secure_id_enabled": settings.secure_id_enabled}


@router.put("/step-up/{factor}")
def configure_step_up(
    factor: str,
    request: StepUpConfigRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Set the COT or Secure-ID code and switch the factor on or off"""
    settings = system.verification.configure_step_up(user_id, _kind(factor), request.code, request.enabled)
    return {"cot_enabled": settings.cot_enabled, "secure_id_enabled": settings.secure_id_enabled}
