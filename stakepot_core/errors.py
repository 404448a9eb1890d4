"""
Error taxonomy for the StakePot ledger.

Every failure a caller can observe is a ``StakingError`` subclass carrying a
stable ``code`` string, grouped the way callers usually want to react:

  - AuthorizationError  – wrong caller (NotAdmin, NotOwner)
  - ValidationError     – bad arguments (BelowMinimum, UnknownPeriod, ...)
  - ResourceStateError  – operation precondition unmet (EmptyPot, NoStakers)
  - CollaboratorError   – the transfer service refused or failed

Nothing here is retried internally; failures are raised synchronously and
leave the ledger untouched.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for every ledger-level failure."""

    code: str = "StakingError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


# ── authorization ───────────────────────────────────────────────────────

class AuthorizationError(StakingError):
    code = "Unauthorized"


class NotAdmin(AuthorizationError):
    code = "NotAdmin"


class NotOwner(AuthorizationError):
    code = "NotOwner"


# ── validation ──────────────────────────────────────────────────────────

class ValidationError(StakingError):
    code = "Invalid"


class BelowMinimum(ValidationError):
    code = "BelowMinimum"


class UnknownPeriod(ValidationError):
    code = "UnknownPeriod"


class OutOfRange(ValidationError):
    code = "OutOfRange"


class InvalidIndex(ValidationError):
    code = "InvalidIndex"


class AlreadyClosed(ValidationError):
    code = "AlreadyClosed"


class Overflow(ValidationError):
    code = "Overflow"


# ── resource state ──────────────────────────────────────────────────────

class ResourceStateError(StakingError):
    code = "ResourceState"


class EmptyPot(ResourceStateError):
    code = "EmptyPot"


class NoStakers(ResourceStateError):
    code = "NoStakers"


# ── collaborator ────────────────────────────────────────────────────────

class CollaboratorError(StakingError):
    code = "Collaborator"


class TransferRejected(CollaboratorError):
    code = "TransferRejected"


class TransferFault(CollaboratorError):
    code = "Fault"


class InsufficientFunds(TransferRejected):
    """Raised by a transfer service when balance or allowance is short."""
    code = "InsufficientFunds"


# ── internal consistency ────────────────────────────────────────────────

class InvariantViolation(StakingError):
    code = "InvariantViolation"
