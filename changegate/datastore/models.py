"""
Change Store Data Models

Dataclasses representing entities stored in the change store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, FrozenSet
from enum import Enum


class ChangeKind(Enum):
    """Tagged variant of a proposed mutation"""
    TABLE_CREATE = "table_create"
    TABLE_UPDATE = "table_update"
    TABLE_DELETE = "table_delete"
    FIELD_CREATE = "field_create"
    FIELD_UPDATE = "field_update"
    FIELD_DELETE = "field_delete"
    RELATIONSHIP_CREATE = "relationship_create"
    RELATIONSHIP_DELETE = "relationship_delete"
    DEPLOYMENT = "deployment"


class ChangeStatus(Enum):
    """Change lifecycle status"""
    DRAFT = "draft"
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class FailureReason(Enum):
    """Why a change ended in FAILED"""
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"
    EFFECTOR_ERROR = "effector_error"


class Role(Enum):
    """Approver roles"""
    DEVELOPER = "developer"
    MANAGER = "manager"
    ADMIN = "admin"


class Decision(Enum):
    """Vote decision"""
    APPROVED = "approved"
    REJECTED = "rejected"


class EnvironmentType(Enum):
    """Deployment environment tier"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LeaseType(Enum):
    """Lease types guarding external side effects"""
    APPLY = "apply"
    REVERT = "revert"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ApprovalStepDefinition:
    """A named gate requiring min_approvals role-matching approvals"""
    name: str
    required_roles: FrozenSet[Role]
    min_approvals: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'name': self.name,
            'required_roles': sorted(role.value for role in self.required_roles),
            'min_approvals': self.min_approvals
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalStepDefinition':
        """Deserialize from dictionary"""
        return cls(
            name=data['name'],
            required_roles=frozenset(Role(r) for r in data['required_roles']),
            min_approvals=int(data.get('min_approvals', 1))
        )


@dataclass
class Change:
    """One proposed mutation tracked through the approval lifecycle"""
    change_id: str
    kind: ChangeKind
    payload: Dict[str, Any]
    author_id: str
    scope_id: str
    status: ChangeStatus = ChangeStatus.PENDING
    step_plan: List[ApprovalStepDefinition] = field(default_factory=list)
    version: int = 0  # For optimistic locking
    environment_type: Optional[EnvironmentType] = None  # Deployments only
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    rollback_data: Optional[Dict[str, Any]] = None  # Set iff status == APPLIED
    apply_attempts: int = 0
    run_id: Optional[str] = None  # Pipeline run this hop belongs to
    hop_index: Optional[int] = None
    linked_change_id: Optional[str] = None  # Rollback request -> original change
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Coerce enums and make datetimes timezone-aware"""
        if isinstance(self.kind, str):
            self.kind = ChangeKind(self.kind)
        if isinstance(self.status, str):
            self.status = ChangeStatus(self.status)
        if isinstance(self.reason, str):
            self.reason = FailureReason(self.reason)
        if isinstance(self.environment_type, str):
            self.environment_type = EnvironmentType(self.environment_type)

        for field_name in ['created_at', 'submitted_at', 'applied_at', 'updated_at']:
            setattr(self, field_name, _utc(getattr(self, field_name)))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'change_id': self.change_id,
            'kind': self.kind.value,
            'payload': self.payload,
            'author_id': self.author_id,
            'scope_id': self.scope_id,
            'status': self.status.value,
            'step_plan': [step.to_dict() for step in self.step_plan],
            'version': self.version,
            'environment_type': self.environment_type.value if self.environment_type else None,
            'reason': self.reason.value if self.reason else None,
            'error': self.error,
            'rollback_data': self.rollback_data,
            'apply_attempts': self.apply_attempts,
            'run_id': self.run_id,
            'hop_index': self.hop_index,
            'linked_change_id': self.linked_change_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


@dataclass
class ApprovalRecord:
    """A single vote on one step of a change"""
    record_id: str
    change_id: str
    step_index: int
    approver_id: str
    approver_role: Role
    decision: Decision
    comments: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.approver_role, str):
            self.approver_role = Role(self.approver_role)
        if isinstance(self.decision, str):
            self.decision = Decision(self.decision)
        self.timestamp = _utc(self.timestamp) or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'record_id': self.record_id,
            'change_id': self.change_id,
            'step_index': self.step_index,
            'approver_id': self.approver_id,
            'approver_role': self.approver_role.value,
            'decision': self.decision.value,
            'comments': self.comments,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass
class AuditEvent:
    """Immutable audit log entry"""
    event_id: str
    event_type: str  # e.g., "CHANGE_APPLIED", "VOTE_CAST"
    change_id: str
    actor_id: str
    timestamp: datetime
    scope_id: Optional[str] = None
    kind: Optional[str] = None
    status: Optional[str] = None  # Change status after the event
    author_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None  # HMAC signature for tamper-evidence

    def __post_init__(self):
        """Ensure timestamp is timezone-aware"""
        self.timestamp = _utc(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'change_id': self.change_id,
            'actor_id': self.actor_id,
            'timestamp': self.timestamp.isoformat(),
            'scope_id': self.scope_id,
            'kind': self.kind,
            'status': self.status,
            'author_id': self.author_id,
            'details': self.details,
            'signature': self.signature
        }


@dataclass
class Lease:
    """Exclusive, TTL-bounded claim on a change's side effect"""
    lease_id: str
    subject_id: str  # change_id
    lease_type: LeaseType
    held_by: str
    acquired_at: datetime
    expires_at: datetime

    def __post_init__(self):
        self.acquired_at = _utc(self.acquired_at)
        self.expires_at = _utc(self.expires_at)

        if isinstance(self.lease_type, str):
            self.lease_type = LeaseType(self.lease_type)

    def is_expired(self) -> bool:
        """Check if lease has expired"""
        return datetime.now(timezone.utc) > self.expires_at


@dataclass
class Environment:
    """Deployment target"""
    environment_id: str
    name: str
    env_type: EnvironmentType

    def __post_init__(self):
        if isinstance(self.env_type, str):
            self.env_type = EnvironmentType(self.env_type)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'environment_id': self.environment_id,
            'name': self.name,
            'env_type': self.env_type.value
        }


@dataclass
class Pipeline:
    """Ordered sequence of environments a deployment is promoted through"""
    pipeline_id: str
    name: str
    environments: List[str]
    auto_promote: bool = False
    requires_approval: bool = True
    gated_environments: Optional[List[str]] = None  # None: every hop is gated

    def is_gated(self, environment_id: str) -> bool:
        """Whether the hop into environment_id goes through approval"""
        if not self.requires_approval:
            return False
        if self.gated_environments is None:
            return True
        return environment_id in self.gated_environments

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'pipeline_id': self.pipeline_id,
            'name': self.name,
            'environments': list(self.environments),
            'auto_promote': self.auto_promote,
            'requires_approval': self.requires_approval,
            'gated_environments': self.gated_environments
        }


class RunState(Enum):
    """Derived state of a pipeline run"""
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_PROMOTION = "awaiting_promotion"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PipelineRun:
    """Derived view: the deployment hops sharing a run_id"""
    run_id: str
    pipeline_id: str
    author_id: str
    payload: Dict[str, Any]
    created_at: datetime
    hops: List[Change] = field(default_factory=list)
    state: Optional[RunState] = None

    @property
    def current_hop(self) -> Optional[Change]:
        """Most recently started hop"""
        return self.hops[-1] if self.hops else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'run_id': self.run_id,
            'pipeline_id': self.pipeline_id,
            'author_id': self.author_id,
            'payload': self.payload,
            'created_at': self.created_at.isoformat(),
            'state': self.state.value if self.state else None,
            'hops': [hop.to_dict() for hop in self.hops]
        }


@dataclass
class StoreResult:
    """Result of a store write"""
    success: bool
    error: Optional[str] = None
    data: Optional[Any] = None
    conflict: bool = False


@dataclass
class AuditPage:
    """One page of audit events"""
    items: List[AuditEvent]
    page: int
    page_size: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            'items': [event.to_dict() for event in self.items],
            'page': self.page,
            'page_size': self.page_size,
            'total': self.total
        }
