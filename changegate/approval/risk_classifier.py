"""
Change Risk Classifier

Classifies proposed changes into risk tiers:
- LOW: Additive or in-place edits (field updates, non-production deployments)
- MEDIUM: Structural additions (new tables, relationships, production deployments)
- HIGH: Destructive changes (table or field deletion)

The risk tier determines the approval step plan frozen on a change at
submission. Classification is pure: the same kind, environment and policy
always produce the same plan.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from changegate.datastore.models import (
    ApprovalStepDefinition, ChangeKind, EnvironmentType, Role
)


class RiskLevel(Enum):
    """Change risk levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


TECHNICAL_REVIEW = ApprovalStepDefinition(
    name="Technical Review",
    required_roles=frozenset({Role.DEVELOPER, Role.ADMIN}),
    min_approvals=1
)

MANAGER_APPROVAL = ApprovalStepDefinition(
    name="Manager Approval",
    required_roles=frozenset({Role.MANAGER, Role.ADMIN}),
    min_approvals=1
)

FINAL_APPROVAL = ApprovalStepDefinition(
    name="Final Approval",
    required_roles=frozenset({Role.ADMIN}),
    min_approvals=1
)

DEFAULT_POLICY: Dict[RiskLevel, List[ApprovalStepDefinition]] = {
    RiskLevel.LOW: [TECHNICAL_REVIEW],
    RiskLevel.MEDIUM: [TECHNICAL_REVIEW, MANAGER_APPROVAL],
    RiskLevel.HIGH: [TECHNICAL_REVIEW, MANAGER_APPROVAL, FINAL_APPROVAL],
}

HIGH_KINDS = frozenset({ChangeKind.TABLE_DELETE, ChangeKind.FIELD_DELETE})

MEDIUM_KINDS = frozenset({ChangeKind.TABLE_CREATE, ChangeKind.RELATIONSHIP_CREATE})


class RiskClassifier:
    """
    Maps (kind, environment_type) to an approval step plan.

    The default policy can be overridden per risk level from configuration:

        risk_policy:
          HIGH:
            - {name: Technical Review, required_roles: [developer, admin], min_approvals: 2}
            - ...
    """

    def __init__(self, policy: Optional[Dict[str, Any]] = None):
        """
        Initialize classifier.

        Args:
            policy: Optional per-level step overrides keyed by level name
        """
        self.logger = logging.getLogger(__name__)
        self.policy: Dict[RiskLevel, List[ApprovalStepDefinition]] = dict(DEFAULT_POLICY)

        for level_name, steps in (policy or {}).items():
            level = RiskLevel(str(level_name).upper())
            if not steps:
                raise ValueError(f"Risk policy for {level.value} must define at least one step")
            self.policy[level] = [
                step if isinstance(step, ApprovalStepDefinition)
                else ApprovalStepDefinition.from_dict(step)
                for step in steps
            ]
            self.logger.info(f"Risk policy override for {level.value}: {len(steps)} step(s)")

    def risk_level(
        self,
        kind: ChangeKind,
        environment_type: Optional[EnvironmentType] = None
    ) -> RiskLevel:
        """Risk tier of a change kind in the given environment"""
        if kind in HIGH_KINDS:
            return RiskLevel.HIGH
        if kind in MEDIUM_KINDS:
            return RiskLevel.MEDIUM
        if kind == ChangeKind.DEPLOYMENT and environment_type == EnvironmentType.PRODUCTION:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def classify(
        self,
        kind: ChangeKind,
        environment_type: Optional[EnvironmentType] = None
    ) -> List[ApprovalStepDefinition]:
        """
        Build the approval step plan for a change.

        Args:
            kind: Change kind
            environment_type: Target environment type (deployments only)

        Returns:
            Ordered list of approval steps (a fresh list; steps are immutable)
        """
        level = self.risk_level(kind, environment_type)
        self.logger.debug(f"{kind.value} classified as {level.value}")
        return list(self.policy[level])

    def classify_with_details(
        self,
        kind: ChangeKind,
        environment_type: Optional[EnvironmentType] = None
    ) -> Dict[str, Any]:
        """
        Classify with detailed reasoning.

        Returns:
            {
                'risk_level': RiskLevel,
                'steps': List[ApprovalStepDefinition],
                'high_risk': bool,
                'reasoning': str
            }
        """
        level = self.risk_level(kind, environment_type)

        if level == RiskLevel.HIGH:
            reasoning = 'Destructive change: data or structure is removed'
        elif kind == ChangeKind.DEPLOYMENT:
            reasoning = 'Deployment to a production environment'
        elif level == RiskLevel.MEDIUM:
            reasoning = 'Structural addition affecting the shape of the schema'
        else:
            reasoning = 'Additive or in-place change with limited impact'

        return {
            'risk_level': level,
            'steps': list(self.policy[level]),
            'high_risk': self.is_high_risk(kind, environment_type),
            'reasoning': reasoning
        }

    def is_high_risk(
        self,
        kind: ChangeKind,
        environment_type: Optional[EnvironmentType] = None
    ) -> bool:
        """
        Whether reverting this change must itself be approved.

        Destructive kinds and production deployments are high risk.
        """
        if kind in HIGH_KINDS:
            return True
        return kind == ChangeKind.DEPLOYMENT and environment_type == EnvironmentType.PRODUCTION


_default_classifier = RiskClassifier()


def classify(
    kind: ChangeKind,
    environment_type: Optional[EnvironmentType] = None
) -> List[ApprovalStepDefinition]:
    """Classify with the default policy"""
    return _default_classifier.classify(kind, environment_type)


# Example usage:
"""
classifier = RiskClassifier()

# Example 1: single technical review
plan = classifier.classify(ChangeKind.FIELD_UPDATE)

# Example 2: production deployment needs manager approval too
plan = classifier.classify(ChangeKind.DEPLOYMENT, EnvironmentType.PRODUCTION)

# Example 3: two reviewers for destructive changes
classifier = RiskClassifier(policy={
    'HIGH': [
        {'name': 'Technical Review', 'required_roles': ['developer', 'admin'], 'min_approvals': 2},
        {'name': 'Final Approval', 'required_roles': ['admin'], 'min_approvals': 1},
    ]
})
details = classifier.classify_with_details(ChangeKind.TABLE_DELETE)
"""
