"""
Tests for AuditTrail

Tests audit log filtering, paging, verification and reports.
"""

import json
import pytest
from datetime import datetime, timezone, timedelta

from changegate.approval.audit_trail import AuditEventType, AuditTrail
from changegate.approval.payloads import table_create_payload
from changegate.datastore.models import ChangeKind
from changegate.errors import ValidationError


@pytest.fixture
def audit(engine):
    return engine.audit


@pytest.fixture
def populated(engine):
    """Two tables' worth of changes with votes and a rejection"""
    orders = engine.submit(ChangeKind.TABLE_CREATE, table_create_payload("Orders"), "app-sales", "alice")
    engine.cast_vote(orders.change_id, "bob", "developer", "approved")

    items = engine.submit(ChangeKind.TABLE_CREATE, table_create_payload("Items"), "app-stock", "dana")
    engine.cast_vote(items.change_id, "bob", "developer", "rejected")

    return orders, items


class TestAuditLog:
    """Test audit log queries"""

    def test_every_transition_is_logged(self, audit, populated):
        orders, items = populated

        assert [e.event_type for e in audit.get_change_history(orders.change_id)] == [
            "CHANGE_SUBMITTED", "VOTE_CAST"
        ]
        assert [e.event_type for e in audit.get_change_history(items.change_id)] == [
            "CHANGE_SUBMITTED", "CHANGE_REJECTED"
        ]

    def test_filter_by_scope_and_status(self, audit, populated):
        page = audit.list_audit_log({'scope_id': 'app-stock', 'status': 'failed'})

        assert page.total == 1
        assert page.items[0].event_type == "CHANGE_REJECTED"
        assert page.items[0].author_id == "dana"

    def test_filter_by_kind_and_author(self, audit, populated):
        page = audit.list_audit_log({'kind': 'table_create', 'author_id': 'alice'})
        assert page.total == 2

    def test_paging_newest_first(self, audit, populated):
        first = audit.list_audit_log(page=1, page_size=3)
        second = audit.list_audit_log(page=2, page_size=3)

        assert first.total == second.total == 4
        assert len(first.items) == 3
        assert len(second.items) == 1
        assert first.items[0].event_type == "CHANGE_REJECTED"
        assert second.items[0].event_type == "CHANGE_SUBMITTED"

    def test_time_range(self, audit, populated):
        now = datetime.now(timezone.utc)

        assert audit.list_audit_log({'from': now - timedelta(minutes=5), 'to': now}).total == 4
        assert audit.list_audit_log({'from': now + timedelta(minutes=5)}).total == 0

    def test_invalid_queries(self, audit):
        now = datetime.now(timezone.utc)

        with pytest.raises(ValidationError):
            audit.list_audit_log(page=0)
        with pytest.raises(ValidationError):
            audit.list_audit_log(page_size=501)
        with pytest.raises(ValidationError):
            audit.list_audit_log({'from': now, 'to': now - timedelta(hours=1)})

    def test_actor_actions(self, audit, populated):
        assert len(audit.get_actor_actions("bob")) == 2


class TestIntegrity:
    """Test signatures, export and reporting"""

    def test_events_verify(self, audit, populated):
        orders, _ = populated

        for event in audit.get_change_history(orders.change_id):
            assert audit.verify_event(event)

    def test_tampered_event_fails_verification(self, audit, populated):
        orders, _ = populated
        event = audit.get_change_history(orders.change_id)[-1]

        event.details['decision'] = 'rejected'
        assert not audit.verify_event(event)

    def test_other_key_fails_verification(self, store, populated):
        from changegate.datastore import ChangeStore

        other = AuditTrail(ChangeStore(str(store.db_path), secret_key=b"other-secret"))
        events = other.list_audit_log().items
        assert not any(other.verify_event(event) for event in events)

    def test_export_to_json(self, audit, populated, tmp_path):
        target = tmp_path / "audit.json"
        audit.export_to_json(str(target), {'scope_id': 'app-sales'})

        data = json.loads(target.read_text())
        assert [entry['event_type'] for entry in data] == ["CHANGE_SUBMITTED", "VOTE_CAST"]

    def test_report(self, audit, populated):
        report = audit.generate_report()

        assert report['total_events'] == 4
        assert report['by_type'][AuditEventType.CHANGE_SUBMITTED.value] == 2
        assert report['by_status'] == {'pending': 3, 'failed': 1}
        assert report['actors'] == ['alice', 'bob', 'dana']
        assert report['period']['start'] == 'beginning'
