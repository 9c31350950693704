"""
Pipeline Promoter

Promotes a codepage version through an ordered list of environments.

Each environment is one hop: a deployment change scoped to that
environment. Gated hops carry the classifier's approval plan, ungated hops
an empty plan. A ready hop is applied at once; after an applied hop the next
one starts only when the pipeline auto-promotes. A failed or rolled-back hop
halts the run; applied hops are never reverted automatically.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.approval.audit_trail import AuditEventType
from changegate.approval.execution import ExecutionApplier
from changegate.approval.payloads import ensure_valid
from changegate.datastore.models import (
    Change, ChangeKind, ChangeStatus, Environment, EnvironmentType,
    Pipeline, PipelineRun, RunState
)
from changegate.errors import ConflictError, NotFoundError, ValidationError
from changegate.effectors.base import Effector
from changegate.logging.logger import change_fields, get_logger


HALTED_STATES = frozenset({RunState.FAILED, RunState.ROLLED_BACK})


class PipelinePromoter:
    """
    Creates environments and pipelines and drives pipeline runs.
    """

    def __init__(
        self,
        engine: ApprovalWorkflowEngine,
        applier: ExecutionApplier,
        component_id: str = "engine"
    ):
        """
        Initialize pipeline promoter.

        Args:
            engine: Approval engine creating the hop changes
            applier: Applier used for ready hops
            component_id: Identifier used in log output
        """
        self.engine = engine
        self.applier = applier
        self.store = engine.store
        self.audit = engine.audit
        self.component_id = component_id
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

    # ===== Environments & Pipelines =====

    def create_environment(
        self,
        name: str,
        env_type: Any,
        environment_id: Optional[str] = None
    ) -> Environment:
        """
        Register a deployment environment.

        Raises:
            ValidationError: Missing name or unknown type
            ConflictError: Environment id already in use
        """
        if not name or not str(name).strip():
            raise ValidationError("Environment name is required")
        try:
            env_type = EnvironmentType(env_type) if not isinstance(env_type, EnvironmentType) else env_type
        except ValueError:
            raise ValidationError(f"Unknown environment type: {env_type}")

        environment = Environment(
            environment_id=environment_id or f"env-{uuid.uuid4().hex[:8]}",
            name=name,
            env_type=env_type
        )

        result = self.store.insert_environment(environment)
        if not result.success:
            raise ConflictError(result.error)

        self.logger.info(
            f"Created environment {environment.environment_id} "
            f"({name}, {env_type.value})"
        )
        return environment

    def create_pipeline(
        self,
        name: str,
        environments: List[str],
        auto_promote: bool = False,
        requires_approval: bool = True,
        gated_environments: Optional[List[str]] = None,
        pipeline_id: Optional[str] = None
    ) -> Pipeline:
        """
        Define a deployment pipeline.

        Args:
            name: Pipeline name
            environments: Ordered environment ids (non-empty, unique, existing)
            auto_promote: Start the next hop as soon as one is applied
            requires_approval: Gate hops behind the approval plan
            gated_environments: Only gate these environments (all if None)
            pipeline_id: Explicit id (generated if omitted)

        Raises:
            ValidationError: If the environment list is invalid
        """
        errors = []

        if not name or not str(name).strip():
            errors.append("Pipeline name is required")
        if not environments:
            errors.append("Pipeline must have at least one environment")
        elif len(set(environments)) != len(environments):
            errors.append("Pipeline environments must be unique")

        for environment_id in environments or []:
            if self.store.get_environment(environment_id) is None:
                errors.append(f"Unknown environment: {environment_id}")

        if gated_environments is not None:
            outside = [env for env in gated_environments if env not in (environments or [])]
            if outside:
                errors.append(f"Gated environments not in pipeline: {', '.join(outside)}")

        if errors:
            raise ValidationError(f"Invalid pipeline: {errors[0]}", errors)

        pipeline = Pipeline(
            pipeline_id=pipeline_id or f"pipe-{uuid.uuid4().hex[:8]}",
            name=name,
            environments=list(environments),
            auto_promote=auto_promote,
            requires_approval=requires_approval,
            gated_environments=list(gated_environments) if gated_environments is not None else None
        )

        result = self.store.insert_pipeline(pipeline)
        if not result.success:
            raise ConflictError(result.error)

        self.logger.info(
            f"Created pipeline {pipeline.pipeline_id} "
            f"({' -> '.join(pipeline.environments)}, auto_promote={auto_promote})"
        )
        return pipeline

    def get_environment(self, environment_id: str) -> Environment:
        """Get environment by ID"""
        environment = self.store.get_environment(environment_id)
        if environment is None:
            raise NotFoundError(f"Environment {environment_id} not found")
        return environment

    def list_environments(self) -> List[Environment]:
        return self.store.list_environments()

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        """Get pipeline by ID"""
        pipeline = self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"Pipeline {pipeline_id} not found")
        return pipeline

    def list_pipelines(self) -> List[Pipeline]:
        return self.store.list_pipelines()

    # ===== Runs =====

    def get_run(self, run_id: str) -> PipelineRun:
        """Get a run with its hops and derived state"""
        run = self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Pipeline run {run_id} not found")

        run.state = self.derive_state(self.get_pipeline(run.pipeline_id), run)
        return run

    def derive_state(self, pipeline: Pipeline, run: PipelineRun) -> RunState:
        """
        Compute a run's state from its latest hop.

        - pending, plan incomplete: AWAITING_APPROVAL
        - pending, plan complete, never attempted: AWAITING_PROMOTION
        - pending, plan complete, attempts failed: RETRY_PENDING
        - applied, last environment: COMPLETED
        - applied, more environments: AWAITING_PROMOTION
        """
        hop = run.current_hop

        if hop.status == ChangeStatus.FAILED:
            return RunState.FAILED
        if hop.status == ChangeStatus.ROLLED_BACK:
            return RunState.ROLLED_BACK
        if hop.status == ChangeStatus.APPLIED:
            if hop.hop_index + 1 >= len(pipeline.environments):
                return RunState.COMPLETED
            return RunState.AWAITING_PROMOTION

        if not self.engine.is_ready(hop):
            return RunState.AWAITING_APPROVAL
        if hop.apply_attempts > 0:
            return RunState.RETRY_PENDING
        return RunState.AWAITING_PROMOTION

    def promote(
        self,
        pipeline_id: str,
        payload: Dict[str, Any],
        author_id: str,
        effector: Effector,
        executor_id: Optional[str] = None
    ) -> PipelineRun:
        """
        Start a pipeline run for a codepage version.

        Args:
            pipeline_id: Pipeline to run
            payload: Deployment payload (codepage_id, version, ...)
            author_id: User starting the run
            effector: External system performing deployments
            executor_id: Worker applying ready hops (author if omitted)

        Returns:
            The run after hop 0 (and any auto-promoted hops) were processed
        """
        pipeline = self.get_pipeline(pipeline_id)
        ensure_valid(ChangeKind.DEPLOYMENT, payload)

        run = PipelineRun(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            pipeline_id=pipeline_id,
            author_id=author_id,
            payload=dict(payload),
            created_at=datetime.now(timezone.utc)
        )
        self.store.insert_run(run)

        hop = self._start_hop(pipeline, run, 0)
        self.audit.log_event(
            AuditEventType.PIPELINE_RUN_STARTED, hop, author_id,
            {'run_id': run.run_id, 'pipeline_id': pipeline_id}
        )
        self.logger.info(
            f"Started run {run.run_id} of pipeline {pipeline_id}",
            extra=change_fields(hop, pipeline_id=pipeline_id)
        )

        self._apply_if_ready(hop, effector, executor_id or author_id)
        return self._cascade(pipeline, run.run_id, effector, executor_id or author_id)

    def promote_next(
        self,
        run_id: str,
        effector: Effector,
        executor_id: str = "system"
    ) -> PipelineRun:
        """
        Advance a run by one hop.

        Applies the current hop if it is approved but not applied yet (or a
        previous attempt failed with a retryable error); otherwise starts
        the next hop and applies it when it needs no approval.

        Raises:
            ConflictError: Awaiting approval, completed, or halted
        """
        run = self.get_run(run_id)
        pipeline = self.get_pipeline(run.pipeline_id)

        if run.state == RunState.AWAITING_APPROVAL:
            raise ConflictError(f"Run {run_id} is awaiting approval")
        if run.state == RunState.COMPLETED:
            raise ConflictError(f"Run {run_id} is already complete")
        if run.state in HALTED_STATES:
            raise ConflictError(f"Run {run_id} is halted ({run.state.value})")

        self._promote_once(pipeline, run, effector, executor_id)
        return self._cascade(pipeline, run_id, effector, executor_id)

    def resume(
        self,
        run_id: str,
        effector: Effector,
        executor_id: str = "system"
    ) -> PipelineRun:
        """Continue an auto-promoting run whose current hop just became ready"""
        run = self.get_run(run_id)
        pipeline = self.get_pipeline(run.pipeline_id)

        if not pipeline.auto_promote:
            return run
        return self._cascade(pipeline, run_id, effector, executor_id)

    def _start_hop(self, pipeline: Pipeline, run: PipelineRun, index: int) -> Change:
        environment_id = pipeline.environments[index]
        plan = None if pipeline.is_gated(environment_id) else []

        hop = self.engine.submit(
            kind=ChangeKind.DEPLOYMENT,
            payload=run.payload,
            scope_id=environment_id,
            author_id=run.author_id,
            run_id=run.run_id,
            hop_index=index,
            step_plan=plan
        )

        self.logger.info(
            f"Run {run.run_id}: hop {index} to {environment_id} "
            f"({'gated' if plan is None else 'ungated'})",
            extra=change_fields(hop, pipeline_id=pipeline.pipeline_id, environment_id=environment_id)
        )
        return hop

    def _apply_if_ready(self, hop: Change, effector: Effector, executor_id: str):
        if self.engine.is_ready(hop):
            self.applier.apply(hop.change_id, effector, executor_id)

    def _promote_once(
        self,
        pipeline: Pipeline,
        run: PipelineRun,
        effector: Effector,
        executor_id: str
    ):
        hop = run.current_hop
        if hop.status == ChangeStatus.APPLIED:
            hop = self._start_hop(pipeline, run, hop.hop_index + 1)
        self._apply_if_ready(hop, effector, executor_id)

    def _cascade(
        self,
        pipeline: Pipeline,
        run_id: str,
        effector: Effector,
        executor_id: str
    ) -> PipelineRun:
        run = self.get_run(run_id)

        while pipeline.auto_promote and run.state == RunState.AWAITING_PROMOTION:
            self._promote_once(pipeline, run, effector, executor_id)
            run = self.get_run(run_id)

        return run
