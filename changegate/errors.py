"""
Error Taxonomy

Exceptions raised by the approval, execution and rollback components.

Local, synchronous errors (validation, permission, conflict) are raised
before any store write. Effector errors are always recorded on the change
and in the audit log before they surface.
"""

import builtins
from typing import List, Optional


class ChangeGateError(Exception):
    """Base class for all engine errors"""


class ValidationError(ChangeGateError):
    """Malformed submission. Non-recoverable for the given input."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class PermissionError(ChangeGateError, builtins.PermissionError):
    """Approver role does not match the current step"""


class ConflictError(ChangeGateError):
    """
    Concurrency or state collision.

    Version mismatch, double-apply race, voting on a closed step. The caller
    should refetch and retry.
    """


class NotFoundError(ChangeGateError):
    """Referenced change, environment, pipeline or run does not exist"""


class RollbackUnavailableError(ChangeGateError):
    """Change is not applied or has no rollback snapshot"""


class EffectorError(ChangeGateError):
    """Failure reported by the external effector"""

    retryable = False


class RetryableEffectorError(EffectorError):
    """Transient failure (timeout, network). Retried with backoff."""

    retryable = True


class FatalEffectorError(EffectorError):
    """The external system rejected the mutation. Needs a human."""
