"""
Shared fixtures for changegate tests
"""

import pytest
from typing import Any, Dict, List, Optional

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.controllers.change_controller import ChangeController
from changegate.datastore import ChangeStore
from changegate.effectors.base import Effector
from changegate.settings import EngineSettings


class RecordingEffector(Effector):
    """
    Effector that records every call.

    Exceptions queued in apply_errors / revert_errors are raised (in order)
    before calls start succeeding.
    """

    def __init__(self, snapshot: Optional[Dict[str, Any]] = None):
        self.applied: List[Dict[str, Any]] = []
        self.reverted: List[Dict[str, Any]] = []
        self.apply_errors: List[Exception] = []
        self.revert_errors: List[Exception] = []
        self.snapshot = snapshot

    def apply(self, payload):
        self.applied.append(payload)
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        if self.snapshot is not None:
            return dict(self.snapshot)
        return {'before': None, 'applied': payload}

    def revert(self, snapshot):
        self.reverted.append(snapshot)
        if self.revert_errors:
            raise self.revert_errors.pop(0)


@pytest.fixture
def store(tmp_path):
    """Fresh change store in a temporary directory"""
    return ChangeStore(str(tmp_path / "changegate.db"), secret_key=b"test-secret")


@pytest.fixture
def engine(store):
    """Approval engine over the temporary store"""
    return ApprovalWorkflowEngine(store, component_id="test")


@pytest.fixture
def effector():
    return RecordingEffector()


@pytest.fixture
def sleeps():
    """Delays requested by the applier (nothing actually sleeps)"""
    return []


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        database_path=str(tmp_path / "controller.db"),
        audit_secret="test-secret",
        apply_backoff_seconds=0.5
    )


@pytest.fixture
def controller(settings, effector, sleeps):
    """Controller wired to the recording effector"""
    return ChangeController(
        settings,
        effector=effector,
        controller_id="test",
        sleep=sleeps.append
    )


@pytest.fixture
def environments(controller):
    """dev -> staging -> prod environments"""
    return [
        controller.create_environment("Development", "development", environment_id="dev"),
        controller.create_environment("Staging", "staging", environment_id="staging"),
        controller.create_environment("Production", "production", environment_id="prod"),
    ]


ROLE_FOR_STEP = {
    "Technical Review": "developer",
    "Manager Approval": "manager",
    "Final Approval": "admin",
}


@pytest.fixture
def approve_all():
    """Vote every step of a change through with one approver per step"""

    def _approve(voter, change):
        for index, step in enumerate(change.step_plan):
            role = ROLE_FOR_STEP.get(step.name, "admin")
            for n in range(step.min_approvals):
                voter.cast_vote(change.change_id, f"{role}-{index}-{n}", role, "approved")
        return voter.get_change(change.change_id)

    return _approve
