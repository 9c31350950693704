"""
Rollback Manager

Reverts applied changes through the effector using the snapshot captured
at apply time.

Features:
- Idempotent: rolling back a rolled-back change is a no-op
- Approval-gated: high-risk changes need an approved rollback request first
- At-most-once revert under a revert lease
- Failed reverts leave the change applied and are recorded in the audit log
"""

from typing import Optional

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.approval.audit_trail import AuditEventType
from changegate.approval.change_state import transition
from changegate.approval.payloads import rollback_request_payload
from changegate.datastore.models import Change, ChangeStatus, LeaseType
from changegate.errors import ConflictError, RollbackUnavailableError
from changegate.effectors.base import Effector
from changegate.logging.logger import change_fields, get_logger
from changegate.monitoring.metrics import track_rollback_outcome


class RollbackManager:
    """
    Coordinates approval and execution of rollbacks.
    """

    def __init__(
        self,
        engine: ApprovalWorkflowEngine,
        component_id: str = "engine",
        lease_ttl_seconds: int = 300,
        max_write_retries: int = 5
    ):
        """
        Initialize rollback manager.

        Args:
            engine: Approval engine (store, classifier, audit)
            component_id: Identifier used in log output
            lease_ttl_seconds: Revert lease lifetime
            max_write_retries: Attempts at recording a completed revert
        """
        self.engine = engine
        self.store = engine.store
        self.audit = engine.audit
        self.classifier = engine.classifier
        self.lease_ttl_seconds = lease_ttl_seconds
        self.max_write_retries = max_write_retries
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

    def rollback(
        self,
        change_id: str,
        requested_by: str,
        reason: str,
        effector: Effector
    ) -> Change:
        """
        Roll back an applied change.

        For high-risk changes the first call opens a rollback request and
        returns it; the revert happens on a later call once that request is
        fully approved.

        Args:
            change_id: Applied change to revert
            requested_by: User asking for the rollback
            reason: Why the change is being reverted
            effector: External system performing the revert

        Returns:
            The rolled-back change, or the pending rollback request

        Raises:
            RollbackUnavailableError: Change is not applied or has no snapshot
            ConflictError: Another revert holds the lease
            EffectorError: The revert failed (change stays applied)
        """
        change = self.engine.get_change(change_id)

        if change.status == ChangeStatus.ROLLED_BACK:
            self.logger.debug(f"Change {change_id} already rolled back")
            return change

        self._ensure_revertible(change)

        request = None
        if self.classifier.is_high_risk(change.kind, change.environment_type):
            request = self._approved_request(change, requested_by, reason)
            if not self.engine.is_ready(request):
                return request

        return self._revert(change, request, requested_by, reason, effector)

    def get_rollback_request(self, change_id: str) -> Optional[Change]:
        """Most recent rollback request opened for a change"""
        requests = self.store.list_changes(linked_change_id=change_id)
        return requests[-1] if requests else None

    def _ensure_revertible(self, change: Change):
        if change.status != ChangeStatus.APPLIED or change.rollback_data is None:
            raise RollbackUnavailableError(
                f"Change {change.change_id} is {change.status.value} "
                f"and has no rollback snapshot"
            )

    def _approved_request(self, change: Change, requested_by: str, reason: str) -> Change:
        """Return the open rollback request, opening a fresh one if needed"""
        request = self.get_rollback_request(change.change_id)

        if request is not None and request.status == ChangeStatus.PENDING:
            if not self.engine.is_expired(request):
                return request
            self.engine.expire_change(request)

        request = self.engine.submit(
            kind=change.kind,
            payload=rollback_request_payload(change.change_id, reason),
            scope_id=change.scope_id,
            author_id=requested_by,
            environment_type=change.environment_type,
            linked_change_id=change.change_id
        )

        self.audit.log_event(
            AuditEventType.ROLLBACK_REQUESTED, change, requested_by,
            {'reason': reason, 'rollback_request_id': request.change_id}
        )
        track_rollback_outcome("requested")
        self.logger.info(
            f"Rollback of {change.change_id} needs approval: "
            f"opened request {request.change_id}",
            extra=change_fields(change, rollback_request_id=request.change_id)
        )

        return request

    def _revert(
        self,
        change: Change,
        request: Optional[Change],
        requested_by: str,
        reason: str,
        effector: Effector
    ) -> Change:
        change_id = change.change_id

        lease = self.store.acquire_lease(
            change_id, LeaseType.REVERT, requested_by, self.lease_ttl_seconds
        )
        if not lease.success:
            raise ConflictError(f"Change {change_id} is being rolled back: {lease.error}")

        try:
            change = self.engine.get_change(change_id)
            if change.status == ChangeStatus.ROLLED_BACK:
                return change
            self._ensure_revertible(change)

            snapshot = change.rollback_data

            if self._reverted_unrecorded(change_id):
                self.logger.warning(
                    f"Change {change_id} was already reverted, recording the rollback only",
                    extra=change_fields(change)
                )
                return self._finish(change, snapshot, request, requested_by, reason)

            try:
                effector.revert(snapshot)
            except Exception as e:
                self.audit.log_event(
                    AuditEventType.ROLLBACK_FAILED, change, requested_by,
                    {
                        'reason': reason,
                        'error': str(e),
                        'rollback_request_id': request.change_id if request else None
                    }
                )
                track_rollback_outcome("failed")
                self.logger.error(
                    f"Rollback of change {change_id} failed: {e}",
                    extra=change_fields(change, reason=reason)
                )
                raise

            return self._finish(change, snapshot, request, requested_by, reason)
        finally:
            self.store.release_lease(lease.data, requested_by)

    def _finish(
        self,
        change: Change,
        snapshot: dict,
        request: Optional[Change],
        requested_by: str,
        reason: str
    ) -> Change:
        change = self._record_rollback(change, snapshot, request, requested_by, reason)

        if request is not None:
            self._close_request(request.change_id, requested_by)

        track_rollback_outcome("rolled_back")
        self.logger.info(
            f"Rolled back change {change.change_id} by {requested_by}: {reason}",
            extra=change_fields(change, reason=reason)
        )

        return change

    def _reverted_unrecorded(self, change_id: str) -> bool:
        """True if the last revert succeeded but its ROLLED_BACK write was lost"""
        for event in reversed(self.audit.get_change_history(change_id)):
            if event.event_type == AuditEventType.ROLLBACK_FAILED.value:
                return bool(event.details.get('reverted'))
            if event.event_type in (
                AuditEventType.CHANGE_APPLIED.value, AuditEventType.CHANGE_ROLLED_BACK.value
            ):
                return False
        return False

    def _record_rollback(
        self,
        change: Change,
        snapshot: dict,
        request: Optional[Change],
        requested_by: str,
        reason: str
    ) -> Change:
        """
        Persist the ROLLED_BACK transition after the effector reverted.

        The revert already happened, so a lost compare-and-swap is retried on
        a fresh read instead of reverting again. If every retry is lost the
        inconsistency is written to the audit log.
        """
        change_id = change.change_id
        details = {
            'reason': reason,
            'snapshot': snapshot,
            'rollback_request_id': request.change_id if request else None
        }

        for attempt in range(self.max_write_retries):
            transition(change, ChangeStatus.ROLLED_BACK)
            event = self.audit.build_event(
                AuditEventType.CHANGE_ROLLED_BACK, change, requested_by, details
            )
            result = self.store.update_change(change, event=event)
            if result.success:
                return change

            self.logger.warning(
                f"Recording rollback of {change_id} collided with a concurrent update "
                f"(attempt {attempt + 1}/{self.max_write_retries}), retrying"
            )
            change = self.engine.get_change(change_id)
            if change.status != ChangeStatus.APPLIED:
                break

        change = self.engine.get_change(change_id)
        self.audit.log_event(
            AuditEventType.ROLLBACK_FAILED, change, requested_by,
            dict(details, error=f"Reverted but not recorded: {result.error}", reverted=True)
        )
        track_rollback_outcome("failed")
        self.logger.error(
            f"Change {change_id} was reverted by the effector but is still "
            f"{change.status.value} in the store",
            extra=change_fields(change, reverted=True)
        )
        raise ConflictError(f"Rollback of {change_id} was reverted but could not be recorded")

    def _close_request(self, request_id: str, actor_id: str):
        request = self.engine.get_change(request_id)
        transition(request, ChangeStatus.APPLIED)
        request.rollback_data = {}

        event = self.audit.build_event(
            AuditEventType.CHANGE_APPLIED, request, actor_id,
            {'rollback_of': request.linked_change_id}
        )
        result = self.store.update_change(request, event=event)
        if not result.success:
            self.logger.warning(f"Could not close rollback request {request_id}: {result.error}")


# Example usage:
"""
from changegate.approval.rollback_manager import RollbackManager

rollbacks = RollbackManager(engine, "engine")

# Low-risk change: reverted immediately
change = rollbacks.rollback("chg-1a2b3c4d5e6f", "alice", "wrong label", effector)
assert change.status == ChangeStatus.ROLLED_BACK

# Table deletion: first call opens a rollback request
request = rollbacks.rollback("chg-77aa88bb99cc", "alice", "restore orders", effector)
engine.cast_vote(request.change_id, "bob", "developer", "approved")
engine.cast_vote(request.change_id, "carol", "manager", "approved")
engine.cast_vote(request.change_id, "dave", "admin", "approved")

# Second call performs the revert
change = rollbacks.rollback("chg-77aa88bb99cc", "alice", "restore orders", effector)
"""
