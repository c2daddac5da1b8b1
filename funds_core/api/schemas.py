"""
Pydantic schemas for API requests and responses
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from ..accounts import Account
from ..authorization import AuthorizationAttempt
from ..ledger import LedgerEntry


# Transfer schemas
class TransferRequest(BaseModel):
    sender_account_id: str
    receiver_account_number: str
    amount: str = Field(..., description="Decimal amount as string")
    narration: str = ""


class PinTransferRequest(TransferRequest):
    pin: str
    cot_code: Optional[str] = None
    secure_id_code: Optional[str] = None


class OtpTransferRequest(TransferRequest):
    otp_code: str


class BeginAuthorizationRequest(TransferRequest):
    method: str = Field("pin", description="pin or otp")


class FactorRequest(BaseModel):
    factor: str = Field(..., description="pin, cot, secure_id or otp")
    code: str


# Admin schemas
class AdjustmentRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    transaction_type: str = Field(..., description="deposit or withdrawal")
    narration: str = ""


class ReverseRequest(BaseModel):
    reason: Optional[str] = None


class AccountStatusRequest(BaseModel):
    status: str = Field(..., description="active or frozen")


class KycApprovalRequest(BaseModel):
    account_type: str = "savings"


# Security schemas
class CodeRequest(BaseModel):
    code: str


class SetPinRequest(BaseModel):
    pin: str


class StepUpConfigRequest(BaseModel):
    code: str
    enabled: bool = True


# Account schemas
class CreateAccountRequest(BaseModel):
    account_type: str = "savings"


# Responses
class TransactionResponse(BaseModel):
    id: str
    reference_code: str
    transaction_type: str
    status: str
    amount: str
    sender_account_id: Optional[str] = None
    receiver_account_id: Optional[str] = None
    narration: str = ""
    initiated_by: Optional[str] = None
    reverses: Optional[str] = None
    reversed_by: Optional[str] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> 'TransactionResponse':
        return cls(
            id=entry.id,
            reference_code=entry.reference_code,
            transaction_type=entry.transaction_type.value,
            status=entry.status.value,
            amount=str(entry.amount),
            sender_account_id=entry.sender_account_id,
            receiver_account_id=entry.receiver_account_id,
            narration=entry.narration,
            initiated_by=entry.initiated_by,
            reverses=entry.reverses,
            reversed_by=entry.reversed_by,
            created_at=entry.created_at.isoformat()
        )


class AccountResponse(BaseModel):
    id: str
    user_id: str
    account_number: str
    account_type: str
    balance: str
    status: str
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            user_id=account.user_id,
            account_number=account.account_number,
            account_type=account.account_type.value,
            balance=str(account.balance),
            status=account.status.value,
            created_at=account.created_at.isoformat()
        )


class AttemptResponse(BaseModel):
    id: str
    state: str
    method: str
    amount: str
    sender_account_id: str
    receiver_account_id: str
    required_factors: List[str]
    completed_factors: List[str]
    awaiting: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    expires_at: str

    @classmethod
    def from_attempt(cls, attempt: AuthorizationAttempt) -> 'AttemptResponse':
        awaited = attempt.awaited_factor
        return cls(
            id=attempt.id,
            state=attempt.state.value,
            method=attempt.method.value,
            amount=str(attempt.amount),
            sender_account_id=attempt.sender_account_id,
            receiver_account_id=attempt.receiver_account_id,
            required_factors=attempt.required_factors,
            completed_factors=attempt.completed_factors,
            awaiting=awaited.value if awaited else None,
            transaction_id=attempt.transaction_id,
            failure_reason=attempt.failure_reason,
            expires_at=attempt.expires_at.isoformat()
        )
