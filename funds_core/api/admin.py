"""
Admin endpoints

Every route relies on AdminService's role check; non-admins get 403.
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import (
    AdjustmentRequest, ReverseRequest, AccountStatusRequest, KycApprovalRequest,
    TransactionResponse, AccountResponse
)


router = APIRouter()


@router.post("/adjustments", response_model=TransactionResponse)
def adjust_balance(
    request: AdjustmentRequest,
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Manual deposit or withdrawal"""
    entry = system.admin.adjust_balance(
        admin_id=admin_id,
        account_id=request.account_id,
        amount=request.amount,
        transaction_type=request.transaction_type,
        narration=request.narration
    )
    return TransactionResponse.from_entry(entry)


@router.post("/transactions/{transaction_id}/reverse", response_model=TransactionResponse)
def reverse_transaction(
    transaction_id: str,
    request: ReverseRequest,
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Reverse a completed transaction; returns the reversal entry"""
    return TransactionResponse.from_entry(
        system.admin.reverse_transaction(admin_id, transaction_id, request.reason)
    )


@router.post("/accounts/{account_id}/status", response_model=AccountResponse)
def set_account_status(
    account_id: str,
    request: AccountStatusRequest,
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Freeze or unfreeze an account"""
    return AccountResponse.from_account(
        system.admin.toggle_account_status(admin_id, account_id, request.status)
    )


@router.post("/kyc/{user_id}/approve", response_model=AccountResponse)
def approve_kyc(
    user_id: str,
    request: KycApprovalRequest,
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an account for a KYC-approved user"""
    return AccountResponse.from_account(system.admin.approve_kyc(admin_id, user_id, request.account_type))


@router.get("/transactions")
def list_transactions(
    limit: int = 50,
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    entries = system.admin.list_transactions(admin_id, limit)
    return {"transactions": [TransactionResponse.from_entry(e) for e in entries]}


@router.get("/accounts")
def list_accounts(
    admin_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    accounts = system.admin.list_accounts(admin_id)
    return {"accounts": [AccountResponse.from_account(a) for a in accounts]}
