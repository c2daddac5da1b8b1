"""
OTP endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import OtpTransferRequest, TransactionResponse


router = APIRouter()


@router.post("/request")
def request_otp(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Issue a fresh OTP; the code is only echoed back in demo mode"""
    otp = system.verification.issue_otp(user_id)
    response = {
        "message": "OTP sent",
        "expires_at": otp.expires_at.isoformat()
    }
    if system.config.demo_mode:
        response["demo_otp"] = otp.code
    return response


@router.post("/transfer", response_model=TransactionResponse)
def verify_otp_and_transfer(
    request: OtpTransferRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Consume an OTP and transfer"""
    entry = system.authorizer.verify_otp_and_transfer(
        user_id=user_id,
        otp_code=request.otp_code,
        sender_account_id=request.sender_account_id,
        receiver_account_number=request.receiver_account_number,
        amount=request.amount,
        narration=request.narration
    )
    return TransactionResponse.from_entry(entry)
