"""
Stepwise transfer authorization endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user
from .schemas import BeginAuthorizationRequest, FactorRequest, AttemptResponse, TransactionResponse


router = APIRouter()


@router.post("", response_model=AttemptResponse)
def begin_authorization(
    request: BeginAuthorizationRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an authorization attempt for a transfer"""
    attempt = system.authorizer.begin_transfer(
        user_id=user_id,
        sender_account_id=request.sender_account_id,
        receiver_account_number=request.receiver_account_number,
        amount=request.amount,
        narration=request.narration,
        method=request.method
    )
    return AttemptResponse.from_attempt(attempt)


@router.get("/{attempt_id}", response_model=AttemptResponse)
def get_authorization(
    attempt_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return AttemptResponse.from_attempt(system.authorizer.get_attempt(attempt_id, user_id))


@router.post("/{attempt_id}/factors", response_model=AttemptResponse)
def submit_factor(
    attempt_id: str,
    request: FactorRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Present the next credential"""
    attempt = system.authorizer.submit_factor(attempt_id, user_id, request.factor, request.code)
    return AttemptResponse.from_attempt(attempt)


@router.post("/{attempt_id}/execute", response_model=TransactionResponse)
def execute_authorization(
    attempt_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Run the transfer for an authorized attempt"""
    return TransactionResponse.from_entry(system.authorizer.execute(attempt_id, user_id))


@router.post("/{attempt_id}/cancel", response_model=AttemptResponse)
def cancel_authorization(
    attempt_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return AttemptResponse.from_attempt(system.authorizer.cancel(attempt_id, user_id))
