#!/usr/bin/env python3
"""
Complete Change Approval Workflow Simulation

Demonstrates end-to-end:
1. Risk classification of schema changes
2. Role-gated, multi-step approval
3. Apply through an effector with a rollback snapshot
4. Rejection halting a change
5. Approval-gated rollback of a destructive change
6. Pipeline promotion dev -> staging -> prod
7. Complete audit trail

Runs against a throwaway database with the dry-run effector.
"""

import logging
import tempfile
from pathlib import Path

from changegate.approval.payloads import (
    deployment_payload, field_payload, table_create_payload
)
from changegate.controllers import ChangeController
from changegate.effectors import DryRunEffector
from changegate.settings import EngineSettings


def setup_logging():
    """Configure logging"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def main():
    """Run complete change approval simulation"""
    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("changegate - Change Approval Workflow Simulation")
    logger.info("=" * 70)

    workdir = Path(tempfile.mkdtemp(prefix="changegate-"))
    settings = EngineSettings(database_path=str(workdir / "changegate.db"))
    effector = DryRunEffector()
    controller = ChangeController(settings, effector=effector, controller_id="simulation")

    # Scenario 1: table creation (two steps)
    logger.info("\n[1/5] Scenario 1: New table, technical review + manager approval")
    logger.info("-" * 70)

    change = controller.submit_change(
        "table_create",
        table_create_payload("Orders", fields=[field_payload("Amount", "currency")]),
        "app-sales",
        "alice"
    )
    logger.info(f"Plan: {[step.name for step in change.step_plan]}")

    controller.cast_vote(change.change_id, "bob", "developer", "approved", comments="Schema looks fine")
    controller.cast_vote(change.change_id, "carol", "manager", "approved")

    result = controller.apply_change(change.change_id, "worker-1")
    logger.info(f"✓ Applied: {result.applied}, snapshot: {result.change.rollback_data}")

    # Scenario 2: rejection
    logger.info("\n[2/5] Scenario 2: Rejected change")
    logger.info("-" * 70)

    rejected = controller.submit_change(
        "table_create", table_create_payload("Scratch"), "app-sales", "alice"
    )
    rejected = controller.cast_vote(rejected.change_id, "bob", "developer", "rejected", comments="Not needed")
    logger.info(f"✓ Status: {rejected.status.value} ({rejected.reason.value})")

    # Scenario 3: destructive change and its rollback
    logger.info("\n[3/5] Scenario 3: Field deletion and approval-gated rollback")
    logger.info("-" * 70)

    deletion = controller.submit_change("field_delete", {'field_id': 'fld-legacy'}, "tbl-orders", "alice")
    controller.cast_vote(deletion.change_id, "bob", "developer", "approved")
    controller.cast_vote(deletion.change_id, "carol", "manager", "approved")
    controller.cast_vote(deletion.change_id, "dave", "admin", "approved")
    controller.apply_change(deletion.change_id, "worker-1")

    request = controller.rollback(deletion.change_id, "alice", "Reports still read this field")
    logger.info(f"Rollback request {request.change_id} opened ({len(request.step_plan)} steps)")

    controller.cast_vote(request.change_id, "bob", "developer", "approved")
    controller.cast_vote(request.change_id, "carol", "manager", "approved")
    controller.cast_vote(request.change_id, "dave", "admin", "approved")

    restored = controller.rollback(deletion.change_id, "alice", "Reports still read this field")
    logger.info(f"✓ Status: {restored.status.value}, reverts performed: {len(effector.reverted)}")

    # Scenario 4: pipeline promotion
    logger.info("\n[4/5] Scenario 4: Promote a codepage through dev -> staging -> prod")
    logger.info("-" * 70)

    controller.create_environment("Development", "development", environment_id="dev")
    controller.create_environment("Staging", "staging", environment_id="staging")
    controller.create_environment("Production", "production", environment_id="prod")

    pipeline = controller.create_pipeline(
        "release", ["dev", "staging", "prod"],
        auto_promote=True,
        gated_environments=["prod"]
    )

    run = controller.promote_pipeline(pipeline.pipeline_id, deployment_payload("cp-billing", "1.4.0"), "alice")
    logger.info(f"Run {run.run_id}: {run.state.value} at {run.current_hop.scope_id}")

    prod = run.current_hop
    controller.cast_vote(prod.change_id, "bob", "developer", "approved")
    controller.cast_vote(prod.change_id, "carol", "manager", "approved")

    run = controller.get_pipeline_run(run.run_id)
    logger.info(f"✓ Run {run.run_id}: {run.state.value}")

    # Audit trail
    logger.info("\n[5/5] Audit trail")
    logger.info("-" * 70)

    for event in controller.get_change_history(change.change_id):
        logger.info(f"  {event.timestamp.isoformat()} {event.event_type} by {event.actor_id}")

    report = controller.audit_report()
    logger.info(f"Total events: {report['total_events']}")
    logger.info(f"By type: {report['by_type']}")

    logger.info("\n" + "=" * 70)
    logger.info("Simulation complete")
    logger.info("=" * 70)


if __name__ == "__main__":
    main()
