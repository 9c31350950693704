"""
Change Controller

Wires the store, classifier, approval engine, applier, rollback manager,
pipeline promoter and audit trail together and exposes the operations used
by the REST server and the CLI.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.approval.audit_trail import AuditTrail
from changegate.approval.execution import ApplyResult, ExecutionApplier
from changegate.approval.expiry import ExpirySweeper
from changegate.approval.pipeline import PipelinePromoter
from changegate.approval.risk_classifier import RiskClassifier
from changegate.approval.rollback_manager import RollbackManager
from changegate.datastore import ChangeStore
from changegate.datastore.models import (
    ApprovalRecord, AuditEvent, AuditPage, Change,
    Environment, Pipeline, PipelineRun
)
from changegate.effectors import DryRunEffector, Effector, RESTEffector
from changegate.errors import ConflictError
from changegate.logging.logger import get_logger
from changegate.settings import EngineSettings


class ChangeController:
    """
    Facade over the change approval engine.

    One controller owns one store; any number of controllers (threads or
    processes) may share the same database file.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[ChangeStore] = None,
        effector: Optional[Effector] = None,
        controller_id: str = "changegate",
        scope_resolver: Optional[Callable[[str], bool]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize change controller.

        Args:
            settings: Engine settings (defaults if omitted)
            store: Change store (opened from settings.database_path if omitted)
            effector: Effector for apply/revert (REST or dry-run from settings if omitted)
            controller_id: Identifier used in log output
            scope_resolver: Optional check that a table id exists
            sleep: Delay function for apply backoff
        """
        self.settings = settings or EngineSettings()
        self.controller_id = controller_id
        self.logger = get_logger(__name__, component_id=controller_id)

        self.store = store or ChangeStore(
            self.settings.database_path,
            secret_key=self.settings.audit_secret.encode('utf-8'),
            timeout=self.settings.db_timeout_seconds
        )
        self.effector = effector or self._build_effector()

        self.classifier = RiskClassifier(self.settings.risk_policy)
        self.audit = AuditTrail(self.store, controller_id)
        self.engine = ApprovalWorkflowEngine(
            self.store,
            classifier=self.classifier,
            audit=self.audit,
            component_id=controller_id,
            pending_ttl_minutes=self.settings.pending_ttl_minutes,
            vote_max_retries=self.settings.vote_max_retries,
            scope_resolver=scope_resolver
        )
        self.applier = ExecutionApplier(
            self.engine,
            component_id=controller_id,
            max_attempts=self.settings.apply_max_attempts,
            backoff_seconds=self.settings.apply_backoff_seconds,
            lease_ttl_seconds=self.settings.lease_ttl_seconds,
            sleep=sleep
        )
        self.rollbacks = RollbackManager(
            self.engine,
            component_id=controller_id,
            lease_ttl_seconds=self.settings.lease_ttl_seconds
        )
        self.promoter = PipelinePromoter(self.engine, self.applier, component_id=controller_id)
        self.sweeper = ExpirySweeper(
            self.engine,
            interval_seconds=self.settings.sweep_interval_seconds,
            component_id=controller_id
        )

        self.logger.info(f"Change controller {controller_id} initialized")

    def _build_effector(self) -> Effector:
        if self.settings.effector.base_url:
            return RESTEffector(
                self.settings.effector.base_url,
                timeout=self.settings.effector.timeout,
                api_token=self.settings.effector.api_token
            )
        self.logger.warning("No effector endpoint configured, using dry-run effector")
        return DryRunEffector()

    # ===== Changes =====

    def submit_change(
        self,
        kind: Any,
        payload: Dict[str, Any],
        scope_id: str,
        author_id: str,
        environment_type: Optional[Any] = None,
        draft: bool = False
    ) -> Change:
        """Submit a schema change or a standalone deployment"""
        return self.engine.submit(
            kind, payload, scope_id, author_id,
            environment_type=environment_type, draft=draft
        )

    def submit_draft(self, change_id: str, actor_id: str) -> Change:
        """Move a draft to pending"""
        return self.engine.submit_draft(change_id, actor_id)

    def get_change(self, change_id: str) -> Change:
        """Get change by ID"""
        return self.engine.get_change(change_id)

    def current_step(self, change_id: str) -> int:
        """Current approval step of a change, or COMPLETE"""
        return self.engine.current_step(self.engine.get_change(change_id))

    def list_approval_records(self, change_id: str, history: bool = False) -> List[ApprovalRecord]:
        """Effective approval records, or every vote with history=True"""
        if history:
            return self.engine.get_vote_history(change_id)
        return self.engine.get_approval_records(change_id)

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
        Vote on a change.

        When the vote completes a gated hop of an auto-promoting pipeline
        the run is resumed straight away.
        """
        change = self.engine.cast_vote(
            change_id, approver_id, approver_role, decision,
            comments=comments, step_index=step_index
        )

        if change.run_id and self.engine.is_ready(change):
            try:
                self.promoter.resume(change.run_id, self.effector, executor_id=approver_id)
            except ConflictError as e:
                self.logger.warning(f"Could not resume run {change.run_id}: {e}")
            change = self.engine.get_change(change_id)

        return change

    def apply_change(self, change_id: str, executor_id: str) -> ApplyResult:
        """Apply a fully approved change"""
        return self.applier.apply(change_id, self.effector, executor_id)

    def withdraw_change(self, change_id: str, author_id: str) -> Change:
        """Withdraw a change before any approval"""
        return self.engine.withdraw(change_id, author_id)

    def rollback(self, change_id: str, requested_by: str, reason: str) -> Change:
        """Roll back an applied change (or open/return its rollback request)"""
        return self.rollbacks.rollback(change_id, requested_by, reason, self.effector)

    def pending_approvals(
        self,
        scope_id: Optional[str] = None,
        role: Optional[Any] = None
    ) -> List[Change]:
        """Changes waiting for votes, optionally only those a role can vote on"""
        return self.engine.pending_approvals(scope_id=scope_id, role=role)

    def expire_stale(self) -> int:
        """Expire stale pending changes now"""
        return self.engine.expire_stale()

    # ===== Audit =====

    def list_audit_log(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        page_size: int = 50
    ) -> AuditPage:
        """Filtered, paged audit log, newest first"""
        return self.audit.list_audit_log(filters, page, page_size)

    def get_change_history(self, change_id: str) -> List[AuditEvent]:
        """Audit events of one change, oldest first"""
        self.engine.get_change(change_id)
        return self.audit.get_change_history(change_id)

    def audit_report(self, start_time=None, end_time=None) -> Dict[str, Any]:
        """Summary statistics over the audit log"""
        return self.audit.generate_report(start_time, end_time)

    # ===== Pipelines =====

    def create_environment(
        self,
        name: str,
        env_type: Any,
        environment_id: Optional[str] = None
    ) -> Environment:
        """Register a deployment environment"""
        return self.promoter.create_environment(name, env_type, environment_id)

    def get_environment(self, environment_id: str) -> Environment:
        return self.promoter.get_environment(environment_id)

    def list_environments(self) -> List[Environment]:
        return self.promoter.list_environments()

    def create_pipeline(
        self,
        name: str,
        environments: List[str],
        auto_promote: bool = False,
        requires_approval: bool = True,
        gated_environments: Optional[List[str]] = None,
        pipeline_id: Optional[str] = None
    ) -> Pipeline:
        """Define a deployment pipeline"""
        return self.promoter.create_pipeline(
            name, environments,
            auto_promote=auto_promote,
            requires_approval=requires_approval,
            gated_environments=gated_environments,
            pipeline_id=pipeline_id
        )

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        return self.promoter.get_pipeline(pipeline_id)

    def list_pipelines(self) -> List[Pipeline]:
        return self.promoter.list_pipelines()

    def promote_pipeline(
        self,
        pipeline_id: str,
        payload: Dict[str, Any],
        author_id: str
    ) -> PipelineRun:
        """Start a pipeline run"""
        return self.promoter.promote(pipeline_id, payload, author_id, self.effector)

    def promote_next(self, run_id: str, executor_id: str) -> PipelineRun:
        """Advance a pipeline run by one hop"""
        return self.promoter.promote_next(run_id, self.effector, executor_id)

    def get_pipeline_run(self, run_id: str) -> PipelineRun:
        """Get a run with its hops and derived state"""
        return self.promoter.get_run(run_id)

    # ===== Lifecycle =====

    def start(self):
        """Start background expiry sweeps"""
        self.sweeper.start()

    def stop(self):
        """Stop background work"""
        self.sweeper.stop()
        self.logger.info(f"Change controller {self.controller_id} stopped")
