"""
Error Taxonomy Module

Every failure the engine reports belongs to exactly one family so callers can
tell "you made a mistake" (validation) from "that wasn't authorized"
(authorization) from "that can't happen right now" (state / concurrency).
"""

from typing import Optional


class BankingError(Exception):
    """Base class for all funds_core errors"""

    code = "banking_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


# Validation errors: bad input shape, rejected before any store access

class ValidationError(BankingError, ValueError):
    """Invalid request"""
    code = "validation_error"


class InvalidAmount(ValidationError):
    """Amount must be positive and within the allowed maximum"""
    code = "invalid_amount"


class SameAccount(ValidationError):
    """Cannot transfer to the same account"""
    code = "same_account"


class MissingField(ValidationError):
    """A required field is missing"""
    code = "missing_field"


# Authorization errors: always surfaced with a generic message

class AuthorizationError(BankingError):
    """Invalid credential"""
    code = "authorization_error"


class InvalidCredential(AuthorizationError):
    """Invalid credential"""
    code = "invalid_credential"

    def __init__(self, message: Optional[str] = None):
        # The reason is kept for logs only; callers always see the generic text
        super().__init__("Invalid credential")
        self.reason = message


class NotAdmin(AuthorizationError):
    """Not authorized"""
    code = "not_admin"

    def __init__(self, message: Optional[str] = None):
        super().__init__("Not authorized")
        self.reason = message


# State errors: not security sensitive, reported with a specific reason

class StateError(BankingError, ValueError):
    """Operation not allowed in the current state"""
    code = "state_error"


class AccountNotFound(StateError):
    """Account not found"""
    code = "account_not_found"


class TransactionNotFound(StateError):
    """Transaction not found"""
    code = "transaction_not_found"


class AttemptNotFound(StateError):
    """Authorization attempt not found"""
    code = "attempt_not_found"


class InsufficientFunds(StateError):
    """Insufficient funds"""
    code = "insufficient_funds"


class AccountFrozen(StateError):
    """Account is frozen"""
    code = "account_frozen"


class AlreadyReversed(StateError):
    """Transaction already reversed"""
    code = "already_reversed"


class InvalidState(StateError):
    """Invalid state for this operation"""
    code = "invalid_state"


class InvalidTransition(StateError):
    """Invalid authorization step"""
    code = "invalid_transition"


class CardRequired(StateError):
    """An active debit card is required to make transfers"""
    code = "card_required"


# Concurrency errors: safe to retry the whole operation once

class ConcurrencyError(BankingError):
    """Temporary conflict, please retry"""
    code = "concurrency_error"
