"""
Execution Applier

Applies fully approved changes through an injected effector, at most once.

Guarantees:
- Only PENDING changes whose step plan is COMPLETE are applied
- Rollback requests are never applied
- An apply lease (unique per change, TTL-bounded) excludes concurrent executors
- Retryable effector failures are recorded and retried with exponential backoff
- Fatal effector failures fail the change with reason effector_error
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import time

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.approval.audit_trail import AuditEventType
from changegate.approval.change_state import transition
from changegate.datastore.models import (
    AuditEvent, Change, ChangeStatus, FailureReason, LeaseType
)
from changegate.errors import ConflictError, RetryableEffectorError
from changegate.effectors.base import Effector
from changegate.logging.logger import change_fields, get_logger
from changegate.monitoring.metrics import track_apply_outcome


@dataclass
class ApplyResult:
    """Outcome of an apply call"""
    change: Change
    applied: bool
    retryable: bool = False
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'change': self.change.to_dict(),
            'applied': self.applied,
            'retryable': self.retryable,
            'attempts': self.attempts,
            'error': self.error
        }


class ExecutionApplier:
    """
    Applies approved changes under an exclusive lease.
    """

    def __init__(
        self,
        engine: ApprovalWorkflowEngine,
        component_id: str = "engine",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        lease_ttl_seconds: int = 300,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize applier.

        Args:
            engine: Approval engine (readiness checks, store, audit)
            component_id: Identifier used in log output
            max_attempts: Effector attempts per apply call
            backoff_seconds: Base delay; attempt n waits backoff * 2**n
            lease_ttl_seconds: Apply lease lifetime
            sleep: Delay function (replaced in tests)
        """
        self.engine = engine
        self.store = engine.store
        self.audit = engine.audit
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.sleep = sleep
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

    def apply(self, change_id: str, effector: Effector, executor_id: str) -> ApplyResult:
        """
        Apply a fully approved change.

        Args:
            change_id: Change to apply
            effector: External system performing the mutation
            executor_id: Worker or user performing the apply

        Returns:
            ApplyResult (applied, or failed, or still pending and retryable)

        Raises:
            NotFoundError: Unknown change
            ConflictError: Not ready, or another executor holds the lease
        """
        self._ensure_ready(self.engine.get_change(change_id))

        lease = self.store.acquire_lease(
            change_id, LeaseType.APPLY, executor_id, self.lease_ttl_seconds
        )
        if not lease.success:
            raise ConflictError(f"Change {change_id} is being applied: {lease.error}")

        try:
            # Re-check under the lease: another executor may have finished first
            change = self.engine.get_change(change_id)
            self._ensure_ready(change)
            return self._apply_with_retry(change, effector, executor_id)
        finally:
            self.store.release_lease(lease.data, executor_id)

    def _ensure_ready(self, change: Change):
        # Rollback requests are consumed by the rollback manager, never applied
        if change.linked_change_id is not None:
            raise ConflictError(
                f"Change {change.change_id} is a rollback request for "
                f"{change.linked_change_id} and cannot be applied"
            )
        if change.status != ChangeStatus.PENDING:
            raise ConflictError(
                f"Change {change.change_id} is {change.status.value}, not pending"
            )
        if self.engine.is_expired(change):
            raise ConflictError(f"Change {change.change_id} has expired")
        if not self.engine.is_ready(change):
            raise ConflictError(
                f"Change {change.change_id} is awaiting approval "
                f"(step {self.engine.current_step(change)})"
            )

    def _apply_with_retry(
        self,
        change: Change,
        effector: Effector,
        executor_id: str
    ) -> ApplyResult:
        for attempt in range(self.max_attempts):
            try:
                snapshot = effector.apply(change.payload)
            except RetryableEffectorError as e:
                change.apply_attempts += 1
                change.error = str(e)
                self._persist(change, self.audit.build_event(
                    AuditEventType.APPLY_ATTEMPT_FAILED, change, executor_id,
                    {'attempt': change.apply_attempts, 'error': str(e), 'retryable': True}
                ))
                track_apply_outcome("retry")

                if attempt + 1 >= self.max_attempts:
                    self.logger.warning(
                        f"Change {change.change_id} still failing after "
                        f"{self.max_attempts} attempt(s): {e}",
                        extra=change_fields(change, attempt=change.apply_attempts)
                    )
                    return ApplyResult(
                        change=change, applied=False, retryable=True,
                        attempts=attempt + 1, error=str(e)
                    )

                delay = self.backoff_seconds * (2 ** attempt)
                self.logger.warning(
                    f"Apply attempt {attempt + 1}/{self.max_attempts} for "
                    f"{change.change_id} failed: {e}. Retrying in {delay}s",
                    extra=change_fields(change, attempt=change.apply_attempts)
                )
                self.sleep(delay)
            except Exception as e:
                change.apply_attempts += 1
                transition(change, ChangeStatus.FAILED, reason=FailureReason.EFFECTOR_ERROR, error=str(e))
                self._persist(change, self.audit.build_event(
                    AuditEventType.CHANGE_FAILED, change, executor_id,
                    {'attempt': change.apply_attempts, 'error': str(e), 'error_type': type(e).__name__}
                ))
                track_apply_outcome("failed")
                self.logger.error(
                    f"Change {change.change_id} failed to apply: {e}",
                    extra=change_fields(change, attempt=change.apply_attempts)
                )
                return ApplyResult(
                    change=change, applied=False, retryable=False,
                    attempts=attempt + 1, error=str(e)
                )
            else:
                change.apply_attempts += 1
                transition(change, ChangeStatus.APPLIED)
                change.rollback_data = snapshot if snapshot is not None else {}
                change.error = None
                self._persist(change, self.audit.build_event(
                    AuditEventType.CHANGE_APPLIED, change, executor_id,
                    {'attempt': change.apply_attempts}
                ))
                track_apply_outcome("applied")
                self.logger.info(
                    f"Applied change {change.change_id} by {executor_id} "
                    f"(attempt {attempt + 1})",
                    extra=change_fields(change, attempt=change.apply_attempts)
                )
                return ApplyResult(change=change, applied=True, attempts=attempt + 1)

    def _persist(self, change: Change, event: AuditEvent):
        result = self.store.update_change(change, event=event)
        if not result.success:
            self.logger.error(
                f"Change {change.change_id} was modified while applying: {result.error}",
                extra=change_fields(change)
            )
            raise ConflictError(result.error)
