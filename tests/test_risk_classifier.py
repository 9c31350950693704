"""
Tests for RiskClassifier

Tests risk tiers, step plans and policy overrides.
"""

import pytest

from changegate.approval.risk_classifier import (
    FINAL_APPROVAL, MANAGER_APPROVAL, TECHNICAL_REVIEW,
    RiskClassifier, RiskLevel, classify
)
from changegate.datastore.models import ChangeKind, EnvironmentType, Role


class TestRiskClassifier:
    """Test change risk classification"""

    def test_low_risk_single_step(self):
        """Field updates need a technical review only"""
        plan = classify(ChangeKind.FIELD_UPDATE)
        assert plan == [TECHNICAL_REVIEW]

    def test_structural_addition_two_steps(self):
        """Table creation adds a manager approval"""
        plan = classify(ChangeKind.TABLE_CREATE)
        assert plan == [TECHNICAL_REVIEW, MANAGER_APPROVAL]

    def test_destructive_three_steps(self):
        """Deletions need technical, manager and admin approval"""
        for kind in (ChangeKind.TABLE_DELETE, ChangeKind.FIELD_DELETE):
            plan = classify(kind)
            assert [step.name for step in plan] == [
                "Technical Review", "Manager Approval", "Final Approval"
            ]
            assert plan[-1].required_roles == frozenset({Role.ADMIN})

    def test_plan_length_follows_destructiveness(self):
        """More destructive kinds never get shorter plans"""
        assert (
            len(classify(ChangeKind.TABLE_DELETE))
            >= len(classify(ChangeKind.TABLE_CREATE))
            >= len(classify(ChangeKind.FIELD_UPDATE))
        )

    def test_deployment_depends_on_environment(self):
        """Only production deployments are medium risk"""
        classifier = RiskClassifier()

        assert classifier.risk_level(ChangeKind.DEPLOYMENT, EnvironmentType.DEVELOPMENT) == RiskLevel.LOW
        assert classifier.risk_level(ChangeKind.DEPLOYMENT, EnvironmentType.STAGING) == RiskLevel.LOW
        assert classifier.risk_level(ChangeKind.DEPLOYMENT, EnvironmentType.PRODUCTION) == RiskLevel.MEDIUM

    def test_classification_is_pure(self):
        """Same input gives the same plan, and plans are independent lists"""
        classifier = RiskClassifier()

        first = classifier.classify(ChangeKind.TABLE_DELETE)
        first.append(TECHNICAL_REVIEW)

        assert classifier.classify(ChangeKind.TABLE_DELETE) == [
            TECHNICAL_REVIEW, MANAGER_APPROVAL, FINAL_APPROVAL
        ]

    def test_high_risk_for_rollback_approval(self):
        """Deletions and production deployments need an approved rollback"""
        classifier = RiskClassifier()

        assert classifier.is_high_risk(ChangeKind.FIELD_DELETE)
        assert classifier.is_high_risk(ChangeKind.DEPLOYMENT, EnvironmentType.PRODUCTION)
        assert not classifier.is_high_risk(ChangeKind.TABLE_CREATE)
        assert not classifier.is_high_risk(ChangeKind.DEPLOYMENT, EnvironmentType.STAGING)

    def test_classify_with_details(self):
        """Detailed classification explains the tier"""
        details = RiskClassifier().classify_with_details(ChangeKind.TABLE_DELETE)

        assert details['risk_level'] == RiskLevel.HIGH
        assert len(details['steps']) == 3
        assert details['high_risk'] is True
        assert 'Destructive' in details['reasoning']


class TestRiskPolicy:
    """Test configurable policies"""

    def test_override_from_config(self):
        """Level overrides accept config mappings"""
        classifier = RiskClassifier({
            'low': [
                {'name': 'Peer Review', 'required_roles': ['developer'], 'min_approvals': 2}
            ]
        })

        plan = classifier.classify(ChangeKind.FIELD_CREATE)
        assert len(plan) == 1
        assert plan[0].name == 'Peer Review'
        assert plan[0].min_approvals == 2
        assert plan[0].required_roles == frozenset({Role.DEVELOPER})

        # Untouched levels keep the default plan
        assert classifier.classify(ChangeKind.TABLE_CREATE) == [TECHNICAL_REVIEW, MANAGER_APPROVAL]

    def test_empty_level_rejected(self):
        """A tier must keep at least one step"""
        with pytest.raises(ValueError):
            RiskClassifier({'HIGH': []})

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            RiskClassifier({'CRITICAL': [{'name': 'x', 'required_roles': ['admin']}]})
