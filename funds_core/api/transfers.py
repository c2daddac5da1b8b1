"""
Transfer endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import TransferRequest, PinTransferRequest, TransactionResponse


router = APIRouter()


@router.post("", response_model=TransactionResponse)
def transfer_funds(
    request: TransferRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer from one of the caller's accounts to an account number"""
    entry = system.transfers.transfer_funds(
        user_id=user_id,
        sender_account_id=request.sender_account_id,
        receiver_account_number=request.receiver_account_number,
        amount=request.amount,
        narration=request.narration
    )
    return TransactionResponse.from_entry(entry)


@router.post("/pin", response_model=TransactionResponse)
def transfer_with_pin(
    request: PinTransferRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer authorized by PIN plus any enabled step-up codes"""
    entry = system.authorizer.transfer_with_pin(
        user_id=user_id,
        sender_account_id=request.sender_account_id,
        receiver_account_number=request.receiver_account_number,
        amount=request.amount,
        pin=request.pin,
        narration=request.narration,
        cot_code=request.cot_code,
        secure_id_code=request.secure_id_code
    )
    return TransactionResponse.from_entry(entry)
