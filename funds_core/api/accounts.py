"""
Account and transaction history endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import CreateAccountRequest, AccountResponse, TransactionResponse
from ..accounts import AccountType
from ..errors import ValidationError


router = APIRouter()


@router.get("")
def list_accounts(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """The caller's accounts"""
    accounts = system.accounts.list_user_accounts(user_id)
    return {"accounts": [AccountResponse.from_account(a) for a in accounts]}


@router.post("", response_model=AccountResponse)
def open_account(
    request: CreateAccountRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open another account of the chosen type"""
    try:
        account_type = AccountType(request.account_type)
    except ValueError:
        raise ValidationError(f"Unknown account type: {request.account_type}")
    return AccountResponse.from_account(system.accounts.create_account(user_id, account_type))


@router.get("/{account_id}/transactions")
def account_transactions(
    account_id: str,
    limit: int = 50,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Ledger entries touching one of the caller's accounts, newest first"""
    system.accounts.require_owned(account_id, user_id)
    entries = system.ledger.list_by_account(account_id, limit=limit)
    return {"transactions": [TransactionResponse.from_entry(e) for e in entries]}


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return AccountResponse.from_account(system.accounts.require_owned(account_id, user_id))
