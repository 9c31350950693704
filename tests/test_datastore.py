"""
Tests for ChangeStore

Tests optimistic locking, append-only tables, leases and audit queries.
"""

import sqlite3
import pytest
from datetime import datetime, timezone, timedelta

from changegate.approval.risk_classifier import classify
from changegate.datastore.models import (
    ApprovalRecord, AuditEvent, Change, ChangeKind, ChangeStatus, Decision,
    Environment, LeaseType, Pipeline, Role
)


def make_change(change_id="chg-test-001", kind=ChangeKind.TABLE_CREATE, scope_id="tbl-orders"):
    return Change(
        change_id=change_id,
        kind=kind,
        payload={'name': 'Orders'},
        author_id="alice",
        scope_id=scope_id,
        step_plan=classify(kind),
        submitted_at=datetime.now(timezone.utc)
    )


def make_event(change_id, event_type="VOTE_CAST", actor_id="bob", **kwargs):
    return AuditEvent(
        event_id="",
        event_type=event_type,
        change_id=change_id,
        actor_id=actor_id,
        timestamp=kwargs.pop('timestamp', datetime.now(timezone.utc)),
        **kwargs
    )


def make_record(change_id, approver_id="bob", step_index=0, decision=Decision.APPROVED):
    return ApprovalRecord(
        record_id="",
        change_id=change_id,
        step_index=step_index,
        approver_id=approver_id,
        approver_role=Role.DEVELOPER,
        decision=decision
    )


def test_store_initialization(store):
    """Test ChangeStore initializes with schema"""
    assert store.db_path.exists()


def test_change_round_trip(store):
    """Test a change is stored with its frozen step plan"""
    store.insert_change(make_change())

    change = store.get_change("chg-test-001")
    assert change is not None
    assert change.kind == ChangeKind.TABLE_CREATE
    assert change.status == ChangeStatus.PENDING
    assert change.version == 0
    assert change.step_plan == classify(ChangeKind.TABLE_CREATE)
    assert change.rollback_data is None
    assert change.submitted_at.tzinfo is not None


def test_get_missing_change(store):
    assert store.get_change("chg-missing") is None


def test_change_optimistic_locking(store):
    """Test optimistic locking prevents lost updates"""
    store.insert_change(make_change())

    change1 = store.get_change("chg-test-001")
    change2 = store.get_change("chg-test-001")

    # First update succeeds and advances the version
    change1.error = "first"
    result1 = store.update_change(change1)
    assert result1.success
    assert change1.version == 1

    # Second update fails (version mismatch)
    change2.error = "second"
    result2 = store.update_change(change2)
    assert not result2.success
    assert result2.conflict

    assert store.get_change("chg-test-001").error == "first"


def test_conflicting_update_writes_nothing(store):
    """A lost race leaves no approval record or event behind"""
    store.insert_change(make_change())
    stale = store.get_change("chg-test-001")

    fresh = store.get_change("chg-test-001")
    store.update_change(fresh)

    result = store.update_change(
        stale,
        event=make_event("chg-test-001"),
        record=make_record("chg-test-001")
    )

    assert result.conflict
    assert store.list_vote_history("chg-test-001") == []
    assert store.query_events({'change_id': "chg-test-001"})[1] == 0


def test_effective_records_keep_latest_vote(store):
    """Only the latest vote per approver and step counts"""
    store.insert_change(make_change())

    change = store.get_change("chg-test-001")
    store.update_change(change, record=make_record("chg-test-001", decision=Decision.APPROVED))
    store.update_change(change, record=make_record("chg-test-001", decision=Decision.REJECTED))
    store.update_change(change, record=make_record("chg-test-001", approver_id="carol"))

    effective = store.list_approval_records("chg-test-001")
    assert [(r.approver_id, r.decision) for r in effective] == [
        ("bob", Decision.REJECTED),
        ("carol", Decision.APPROVED),
    ]
    assert len(store.list_vote_history("chg-test-001")) == 3


def test_approval_records_are_append_only(store):
    """Test approval records cannot be updated or deleted"""
    store.insert_change(make_change())
    change = store.get_change("chg-test-001")
    store.update_change(change, record=make_record("chg-test-001"))

    with store._get_connection() as conn:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE approval_records SET decision = 'rejected'")

    with store._get_connection() as conn:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM approval_records")

    assert len(store.list_vote_history("chg-test-001")) == 1


def test_audit_log_is_immutable(store):
    """Test audit events cannot be updated or deleted"""
    store.write_event(make_event("chg-test-001"))

    with store._get_connection() as conn:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE audit_events SET actor_id = 'mallory'")

    with store._get_connection() as conn:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM audit_events")


def test_event_signature(store):
    """Events are signed on write and verify against the store key"""
    event = make_event("chg-test-001", details={'step_index': 0})
    store.write_event(event)

    events, total = store.query_events({'change_id': "chg-test-001"})
    assert total == 1
    assert events[0].signature == store.sign_event(events[0])

    events[0].actor_id = "mallory"
    assert events[0].signature != store.sign_event(events[0])


def test_query_events_filters_and_paging(store):
    """Test filtered, paged audit queries, newest first"""
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    for i in range(5):
        store.write_event(make_event(
            f"chg-{i}", scope_id="tbl-a" if i % 2 == 0 else "tbl-b",
            status="pending", timestamp=start + timedelta(minutes=i)
        ))

    events, total = store.query_events({'scope_id': 'tbl-a'})
    assert total == 3
    assert [e.change_id for e in events] == ["chg-4", "chg-2", "chg-0"]

    page, total = store.query_events({}, limit=2, offset=2)
    assert total == 5
    assert [e.change_id for e in page] == ["chg-2", "chg-1"]

    ranged, total = store.query_events({
        'from': start + timedelta(minutes=1),
        'to': start + timedelta(minutes=3)
    })
    assert total == 3


def test_lease_acquisition(store):
    """Test exclusive lease acquisition"""
    result1 = store.acquire_lease("chg-1", LeaseType.APPLY, "worker-1", ttl_seconds=60)
    assert result1.success

    result2 = store.acquire_lease("chg-1", LeaseType.APPLY, "worker-2", ttl_seconds=60)
    assert not result2.success
    assert result2.conflict
    assert "worker-1" in result2.error

    # Different lease type on the same change is independent
    assert store.acquire_lease("chg-1", LeaseType.REVERT, "worker-2").success

    # Only the holder can release
    assert not store.release_lease(result1.data, "worker-2").success
    assert store.release_lease(result1.data, "worker-1").success
    assert store.acquire_lease("chg-1", LeaseType.APPLY, "worker-2").success


def test_expired_lease_is_replaced(store):
    """An expired lease does not block a new holder"""
    store.acquire_lease("chg-1", LeaseType.APPLY, "worker-1", ttl_seconds=-1)

    assert store.check_lease("chg-1", LeaseType.APPLY) is None
    assert store.acquire_lease("chg-1", LeaseType.APPLY, "worker-2").success
    assert store.check_lease("chg-1", LeaseType.APPLY).held_by == "worker-2"


def test_update_unless_leased(store):
    """A guarded update is skipped while the lease is live"""
    store.insert_change(make_change())
    store.acquire_lease("chg-test-001", LeaseType.APPLY, "worker-1")

    change = store.get_change("chg-test-001")
    change.error = "expired"
    result = store.update_change(change, unless_leased=LeaseType.APPLY)
    assert not result.success

    # Unguarded writes still go through
    assert store.update_change(change).success


def test_list_changes_filters(store):
    old = make_change("chg-old")
    old.submitted_at = datetime.now(timezone.utc) - timedelta(days=10)
    store.insert_change(old)
    store.insert_change(make_change("chg-new", scope_id="tbl-items"))

    cutoff = datetime.now(timezone.utc) - timedelta(days=1)
    stale = store.list_changes(status=ChangeStatus.PENDING, submitted_before=cutoff)
    assert [c.change_id for c in stale] == ["chg-old"]

    assert [c.change_id for c in store.list_changes(scope_id="tbl-items")] == ["chg-new"]


def test_stale_cutoff_with_whole_seconds_and_offsets(store):
    """Stored times compare correctly regardless of fraction or UTC offset"""
    whole_second = make_change("chg-whole")
    whole_second.submitted_at = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    store.insert_change(whole_second)

    offset = make_change("chg-offset")
    offset.submitted_at = datetime(2026, 3, 1, 13, 30, 0, tzinfo=timezone(timedelta(hours=2)))
    store.insert_change(offset)

    cutoff = datetime(2026, 3, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)
    stale = store.list_changes(status=ChangeStatus.PENDING, submitted_before=cutoff)

    assert sorted(c.change_id for c in stale) == ["chg-offset", "chg-whole"]
    assert store.get_change("chg-offset").submitted_at == offset.submitted_at


def test_pipeline_hop_is_unique(store):
    """A run can hold only one change per hop index"""
    first = make_change("chg-hop-a", kind=ChangeKind.DEPLOYMENT, scope_id="staging")
    first.run_id, first.hop_index = "run-1", 1
    duplicate = make_change("chg-hop-b", kind=ChangeKind.DEPLOYMENT, scope_id="staging")
    duplicate.run_id, duplicate.hop_index = "run-1", 1

    assert store.insert_change(first).success
    result = store.insert_change(duplicate, make_event("chg-hop-b", event_type="CHANGE_SUBMITTED"))

    assert not result.success
    assert result.conflict
    assert store.get_change("chg-hop-b") is None
    assert store.query_events(filters={'change_id': 'chg-hop-b'})[1] == 0

    # Changes outside pipelines are unaffected
    assert store.insert_change(make_change("chg-free-1")).success
    assert store.insert_change(make_change("chg-free-2")).success


def test_environment_and_pipeline(store):
    """Test environments and pipelines persist"""
    assert store.insert_environment(Environment("dev", "Development", "development")).success
    assert store.insert_environment(Environment("dev", "Duplicate", "staging")).conflict

    pipeline = Pipeline("pipe-1", "release", ["dev"], auto_promote=True, gated_environments=[])
    assert store.insert_pipeline(pipeline).success

    loaded = store.get_pipeline("pipe-1")
    assert loaded.environments == ["dev"]
    assert loaded.auto_promote is True
    assert loaded.gated_environments == []
