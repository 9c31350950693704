"""
changegate Datastore Module

Provides change storage and data models.
"""

from .sqlite_store import ChangeStore
from .models import (
    Change, ApprovalRecord, ApprovalStepDefinition, AuditEvent, AuditPage,
    Lease, Environment, Pipeline, PipelineRun, StoreResult,
    ChangeKind, ChangeStatus, FailureReason, Role, Decision,
    EnvironmentType, LeaseType, RunState
)

__all__ = [
    'ChangeStore',
    'Change', 'ApprovalRecord', 'ApprovalStepDefinition', 'AuditEvent', 'AuditPage',
    'Lease', 'Environment', 'Pipeline', 'PipelineRun', 'StoreResult',
    'ChangeKind', 'ChangeStatus', 'FailureReason', 'Role', 'Decision',
    'EnvironmentType', 'LeaseType', 'RunState'
]
