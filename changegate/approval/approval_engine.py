"""
Approval Workflow Engine

Drives changes through multi-step, role-gated approval:

- submit: validate, classify, freeze the step plan, persist as PENDING (or DRAFT)
- cast_vote: record a vote on the current step with a version compare-and-swap
- withdraw: author pulls a change before anyone approved it
- expire_stale: fail PENDING changes older than the configured TTL

A step is satisfied once min_approvals distinct approvers holding one of its
required roles have an effective APPROVED vote on it. Steps are satisfied in
order; a single REJECTED vote halts the change.
"""

from typing import Callable, Dict, List, Optional, Any
from datetime import datetime, timezone, timedelta
import uuid

from changegate.approval.audit_trail import AuditEventType, AuditTrail
from changegate.approval.change_state import transition
from changegate.approval.payloads import ensure_valid
from changegate.approval.risk_classifier import RiskClassifier
from changegate.datastore.models import (
    ApprovalRecord, ApprovalStepDefinition, Change, ChangeKind, ChangeStatus,
    Decision, EnvironmentType, FailureReason, LeaseType, Role
)
from changegate.datastore.sqlite_store import ChangeStore
from changegate.errors import (
    ConflictError, NotFoundError, PermissionError, ValidationError
)
from changegate.logging.logger import change_fields, get_logger
from changegate.monitoring.metrics import (
    track_change_submitted, track_expired, track_vote
)


COMPLETE = -1

SYSTEM_ACTOR = "system"


def current_step(change: Change, records: List[ApprovalRecord]) -> int:
    """
    Index of the lowest unsatisfied step, or COMPLETE.

    Args:
        change: Change carrying the frozen step plan
        records: Effective approval records for the change

    Returns:
        Step index, or COMPLETE (-1) when every step is satisfied
    """
    for index, step in enumerate(change.step_plan):
        approvers = {
            record.approver_id for record in records
            if record.step_index == index
            and record.decision == Decision.APPROVED
            and record.approver_role in step.required_roles
        }
        if len(approvers) < step.min_approvals:
            return index
    return COMPLETE


def _coerce(enum_type, value, label: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Unknown {label}: {value}")


class ApprovalWorkflowEngine:
    """
    Manages approval workflows for changes.

    No in-process lock is held: concurrent votes on the same change are
    serialized by the store's version check and retried here.
    """

    def __init__(
        self,
        store: ChangeStore,
        classifier: Optional[RiskClassifier] = None,
        audit: Optional[AuditTrail] = None,
        component_id: str = "engine",
        pending_ttl_minutes: int = 7 * 24 * 60,
        vote_max_retries: int = 5,
        scope_resolver: Optional[Callable[[str], bool]] = None
    ):
        """
        Initialize approval workflow engine.

        Args:
            store: Change store
            classifier: Risk classifier (default policy if omitted)
            audit: Audit trail (built on the store if omitted)
            component_id: Identifier used in log output
            pending_ttl_minutes: Minutes a change may stay PENDING
            vote_max_retries: Compare-and-swap attempts per vote
            scope_resolver: Optional check that a schema scope (table id) exists
        """
        self.store = store
        self.classifier = classifier or RiskClassifier()
        self.audit = audit or AuditTrail(store, component_id)
        self.component_id = component_id
        self.pending_ttl = timedelta(minutes=pending_ttl_minutes)
        self.vote_max_retries = vote_max_retries
        self.scope_resolver = scope_resolver
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

    # ===== Submission =====

    def submit(
        self,
        kind: Any,
        payload: Dict[str, Any],
        scope_id: str,
        author_id: str,
        environment_type: Optional[Any] = None,
        draft: bool = False,
        run_id: Optional[str] = None,
        hop_index: Optional[int] = None,
        linked_change_id: Optional[str] = None,
        step_plan: Optional[List[ApprovalStepDefinition]] = None
    ) -> Change:
        """
        Submit a new change.

        Args:
            kind: Change kind
            payload: Kind-specific mutation description
            scope_id: Table id (schema changes) or environment id (deployments)
            author_id: Proposing user
            environment_type: Ignored for deployments (taken from the environment)
            draft: Persist as DRAFT instead of PENDING
            run_id: Pipeline run this change is a hop of
            hop_index: Position of the hop in its pipeline
            linked_change_id: Change a rollback request would revert
            step_plan: Explicit plan (ungated pipeline hops); classified if omitted

        Returns:
            The persisted change

        Raises:
            ValidationError: Before any write, if anything is malformed
            ConflictError: The pipeline hop already exists
        """
        kind = _coerce(ChangeKind, kind, "change kind")

        if not author_id or not str(author_id).strip():
            raise ValidationError("author_id is required")

        ensure_valid(kind, payload, rollback_request=linked_change_id is not None)
        if linked_change_id is not None and payload['rollback_of'] != linked_change_id:
            raise ValidationError(
                f"Rollback request for {payload['rollback_of']} cannot be linked to {linked_change_id}"
            )
        environment_type = self._resolve_scope(kind, scope_id, environment_type)

        plan = list(step_plan) if step_plan is not None else self.classifier.classify(kind, environment_type)
        now = datetime.now(timezone.utc)

        change = Change(
            change_id=f"chg-{uuid.uuid4().hex[:12]}",
            kind=kind,
            payload=dict(payload),
            author_id=author_id,
            scope_id=scope_id,
            status=ChangeStatus.DRAFT if draft else ChangeStatus.PENDING,
            step_plan=plan,
            environment_type=environment_type,
            run_id=run_id,
            hop_index=hop_index,
            linked_change_id=linked_change_id,
            created_at=now,
            submitted_at=None if draft else now
        )

        event_type = AuditEventType.CHANGE_CREATED if draft else AuditEventType.CHANGE_SUBMITTED
        event = self.audit.build_event(
            event_type, change, author_id,
            {
                'steps': [step.name for step in plan],
                'risk_level': self.classifier.risk_level(kind, environment_type).value,
                'run_id': run_id,
                'linked_change_id': linked_change_id
            }
        )
        result = self.store.insert_change(change, event)
        if not result.success:
            raise ConflictError(result.error)

        if not draft:
            track_change_submitted(kind.value)

        self.logger.info(
            f"{'Drafted' if draft else 'Submitted'} change {change.change_id} "
            f"({kind.value} on {scope_id}, {len(plan)} step(s)) by {author_id}",
            extra=change_fields(change, author_id=author_id)
        )

        return change

    def submit_draft(self, change_id: str, actor_id: str) -> Change:
        """
        Move a DRAFT change to PENDING.

        Raises:
            PermissionError: If actor is not the author
            ConflictError: If the change is not a draft or was modified concurrently
        """
        change = self.get_change(change_id)

        if actor_id != change.author_id:
            raise PermissionError(f"Only the author can submit change {change_id}")
        if change.status != ChangeStatus.DRAFT:
            raise ConflictError(f"Change {change_id} is {change.status.value}, not draft")

        transition(change, ChangeStatus.PENDING)
        event = self.audit.build_event(AuditEventType.CHANGE_SUBMITTED, change, actor_id)

        result = self.store.update_change(change, event=event)
        if not result.success:
            raise ConflictError(result.error)

        track_change_submitted(change.kind.value)
        self.logger.info(f"Submitted draft change {change_id}", extra=change_fields(change))

        return change

    def _resolve_scope(
        self,
        kind: ChangeKind,
        scope_id: str,
        environment_type: Optional[Any]
    ) -> Optional[EnvironmentType]:
        if not scope_id or not str(scope_id).strip():
            raise ValidationError("scope_id is required")

        if kind == ChangeKind.DEPLOYMENT:
            environment = self.store.get_environment(scope_id)
            if environment is None:
                raise ValidationError(f"Unknown environment: {scope_id}")
            return environment.env_type

        if self.scope_resolver and not self.scope_resolver(scope_id):
            raise ValidationError(f"Unknown table: {scope_id}")

        if environment_type is not None:
            return _coerce(EnvironmentType, environment_type, "environment type")
        return None

    # ===== Queries =====

    def get_change(self, change_id: str) -> Change:
        """Get change by ID"""
        change = self.store.get_change(change_id)
        if change is None:
            raise NotFoundError(f"Change {change_id} not found")
        return change

    def get_approval_records(self, change_id: str) -> List[ApprovalRecord]:
        """Effective approval records (latest vote per approver and step)"""
        self.get_change(change_id)
        return self.store.list_approval_records(change_id)

    def get_vote_history(self, change_id: str) -> List[ApprovalRecord]:
        """All votes ever cast on a change"""
        self.get_change(change_id)
        return self.store.list_vote_history(change_id)

    def current_step(self, change: Change) -> int:
        """Current step of a stored change, or COMPLETE"""
        return current_step(change, self.store.list_approval_records(change.change_id))

    def is_ready(self, change: Change) -> bool:
        """PENDING with every approval step satisfied"""
        return change.status == ChangeStatus.PENDING and self.current_step(change) == COMPLETE

    def pending_approvals(
        self,
        scope_id: Optional[str] = None,
        role: Optional[Any] = None
    ) -> List[Change]:
        """
        PENDING changes still waiting for votes, oldest first.

        Args:
            scope_id: Only changes on this table or environment
            role: Only changes whose current step this role may vote on
        """
        role = _coerce(Role, role, "role") if role is not None else None

        waiting = []
        for change in self.store.list_changes(scope_id=scope_id, status=ChangeStatus.PENDING):
            step = self.current_step(change)
            if step == COMPLETE or self.is_expired(change):
                continue
            if role is not None and role not in change.step_plan[step].required_roles:
                continue
            waiting.append(change)
        return waiting

    def is_expired(self, change: Change, now: Optional[datetime] = None) -> bool:
        """Check if a PENDING change has outlived the TTL"""
        if change.status != ChangeStatus.PENDING or not change.submitted_at:
            return False

        now = now or datetime.now(timezone.utc)
        return now - change.submitted_at > self.pending_ttl

    # ===== Voting =====

    def cast_vote(
        self,
        change_id: str,
        approver_id: str,
        approver_role: Any,
        decision: Any,
        comments: Optional[str] = None,
        step_index: Optional[int] = None
    ) -> Change:
        """
        Record a vote on the current step.

        Args:
            change_id: Change being voted on
            approver_id: Voting user
            approver_role: Role the approver votes in
            decision: approved or rejected
            comments: Optional free text
            step_index: Step the approver believes is open (checked if given)

        Returns:
            The change after the vote

        Raises:
            PermissionError: Role not allowed on the current step
            ConflictError: Change closed, step not open, duplicate vote, or
                lost every compare-and-swap retry
        """
        approver_role = _coerce(Role, approver_role, "role")
        decision = _coerce(Decision, decision, "decision")

        if not approver_id or not str(approver_id).strip():
            raise ValidationError("approver_id is required")

        target_step: Optional[int] = None

        for attempt in range(self.vote_max_retries):
            change = self.get_change(change_id)

            if change.status != ChangeStatus.PENDING:
                raise ConflictError(f"Change {change_id} is {change.status.value}, not pending")

            if self.is_expired(change):
                self.expire_change(change, approver_id)
                raise ConflictError(f"Change {change_id} has expired")

            records = self.store.list_approval_records(change_id)
            step = current_step(change, records)

            if step == COMPLETE:
                raise ConflictError(f"Change {change_id} is already fully approved")

            if target_step is None:
                if step_index is not None and step_index != step:
                    raise ConflictError(
                        f"Step {step_index} of change {change_id} is not open "
                        f"(current step: {step})"
                    )
                target_step = step
            elif step != target_step:
                raise ConflictError(
                    f"Step {target_step} of change {change_id} completed while voting"
                )

            definition = change.step_plan[step]
            if approver_role not in definition.required_roles:
                raise PermissionError(
                    f"Role {approver_role.value} cannot vote on step "
                    f"'{definition.name}' of change {change_id}"
                )

            previous = next(
                (r for r in records if r.approver_id == approver_id and r.step_index == step),
                None
            )
            if previous and previous.decision == decision:
                raise ConflictError(
                    f"{approver_id} already voted {decision.value} on step {step} of {change_id}"
                )

            record = ApprovalRecord(
                record_id=f"apr-{uuid.uuid4().hex[:12]}",
                change_id=change_id,
                step_index=step,
                approver_id=approver_id,
                approver_role=approver_role,
                decision=decision,
                comments=comments
            )

            details = {
                'step_index': step,
                'step_name': definition.name,
                'decision': decision.value,
                'approver_role': approver_role.value,
                'comments': comments,
                'supersedes': previous.record_id if previous else None
            }

            if decision == Decision.REJECTED:
                transition(change, ChangeStatus.FAILED, reason=FailureReason.REJECTED)
                event = self.audit.build_event(AuditEventType.CHANGE_REJECTED, change, approver_id, details)
            else:
                remaining = [
                    r for r in records
                    if not (r.approver_id == approver_id and r.step_index == step)
                ]
                details['plan_complete'] = current_step(change, remaining + [record]) == COMPLETE
                event = self.audit.build_event(AuditEventType.VOTE_CAST, change, approver_id, details)

            result = self.store.update_change(change, event=event, record=record)

            if result.success:
                track_vote(decision.value)
                self.logger.info(
                    f"{approver_id} ({approver_role.value}) voted {decision.value} "
                    f"on step {step} of change {change_id}",
                    extra=change_fields(change, step_index=step, decision=decision.value)
                )
                return change

            self.logger.warning(
                f"Vote on {change_id} collided with a concurrent update "
                f"(attempt {attempt + 1}/{self.vote_max_retries}), retrying"
            )

        raise ConflictError(
            f"Vote on change {change_id} lost {self.vote_max_retries} concurrent updates"
        )

    # ===== Withdrawal & Expiry =====

    def withdraw(self, change_id: str, author_id: str) -> Change:
        """
        Withdraw a change before anyone approved it.

        Raises:
            PermissionError: If the caller is not the author
            ConflictError: If the change is closed or already has an approval
        """
        change = self.get_change(change_id)

        if author_id != change.author_id:
            raise PermissionError(f"Only the author can withdraw change {change_id}")

        if change.status not in (ChangeStatus.DRAFT, ChangeStatus.PENDING):
            raise ConflictError(f"Change {change_id} is {change.status.value}, cannot withdraw")

        records = self.store.list_approval_records(change_id)
        if any(record.decision == Decision.APPROVED for record in records):
            raise ConflictError(f"Change {change_id} already has approvals, cannot withdraw")

        transition(change, ChangeStatus.FAILED, reason=FailureReason.WITHDRAWN)
        event = self.audit.build_event(AuditEventType.CHANGE_WITHDRAWN, change, author_id)

        result = self.store.update_change(change, event=event, unless_leased=LeaseType.APPLY)
        if not result.success:
            raise ConflictError(f"Change {change_id} changed concurrently, cannot withdraw")

        self.logger.info(f"Change {change_id} withdrawn by {author_id}", extra=change_fields(change))
        return change

    def expire_change(
        self,
        change: Change,
        actor_id: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None
    ) -> bool:
        """Fail one PENDING change as expired unless its apply lease is held"""
        age = (now or datetime.now(timezone.utc)) - change.submitted_at
        transition(change, ChangeStatus.FAILED, reason=FailureReason.EXPIRED)
        event = self.audit.build_event(
            AuditEventType.CHANGE_EXPIRED, change, actor_id,
            {'age_minutes': int(age.total_seconds() // 60)}
        )

        result = self.store.update_change(change, event=event, unless_leased=LeaseType.APPLY)
        if result.success:
            track_expired()
            self.logger.info(f"Expired change {change.change_id}", extra=change_fields(change))
        else:
            self.logger.debug(f"Skipped expiring {change.change_id}: {result.error}")
        return result.success

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Mark stale PENDING changes as FAILED (expired).

        Changes whose apply lease is currently held are skipped.

        Returns:
            Number of changes expired
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.pending_ttl

        count = 0
        for change in self.store.list_changes(status=ChangeStatus.PENDING, submitted_before=cutoff):
            if self.expire_change(change, now=now):
                count += 1

        if count:
            self.logger.info(f"Expired {count} stale change(s)")
        return count
