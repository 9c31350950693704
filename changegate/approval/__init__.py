"""
Change Approval Module

Exports all change approval components:
- Risk classification
- Payload validation
- Change state machine
- Approval workflow engine
- Execution applier
- Rollback manager
- Pipeline promoter
- Audit trail
- Expiry sweeper
"""

from changegate.approval.risk_classifier import RiskClassifier, RiskLevel, classify
from changegate.approval.payloads import validate_payload, ensure_valid
from changegate.approval.change_state import VALID_TRANSITIONS, can_transition
from changegate.approval.audit_trail import AuditTrail, AuditEventType
from changegate.approval.approval_engine import ApprovalWorkflowEngine, COMPLETE, current_step
from changegate.approval.execution import ApplyResult, ExecutionApplier
from changegate.approval.rollback_manager import RollbackManager
from changegate.approval.pipeline import PipelinePromoter
from changegate.approval.expiry import ExpirySweeper

__all__ = [
    "RiskClassifier",
    "RiskLevel",
    "classify",
    "validate_payload",
    "ensure_valid",
    "VALID_TRANSITIONS",
    "can_transition",
    "AuditTrail",
    "AuditEventType",
    "ApprovalWorkflowEngine",
    "COMPLETE",
    "current_step",
    "ApplyResult",
    "ExecutionApplier",
    "RollbackManager",
    "PipelinePromoter",
    "ExpirySweeper"
]
