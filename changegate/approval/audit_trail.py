"""
Audit Trail System

Append-only audit log for every change transition and vote.

Tracks:
- Who proposed what change
- Who voted, on which step, and how
- When the change was applied and by whom
- What the outcome was
- Any rollbacks performed

Events are persisted by the change store in the same transaction as the
transition they describe, and signed with HMAC-SHA256 for tamper-evidence.
"""

from enum import Enum
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
import json
import uuid

from changegate.datastore.models import AuditEvent, AuditPage, Change
from changegate.datastore.sqlite_store import ChangeStore
from changegate.errors import ValidationError
from changegate.logging.logger import get_logger


MAX_PAGE_SIZE = 500


class AuditEventType(Enum):
    """Types of audit events"""
    CHANGE_CREATED = "CHANGE_CREATED"
    CHANGE_SUBMITTED = "CHANGE_SUBMITTED"
    VOTE_CAST = "VOTE_CAST"
    CHANGE_REJECTED = "CHANGE_REJECTED"
    CHANGE_WITHDRAWN = "CHANGE_WITHDRAWN"
    CHANGE_EXPIRED = "CHANGE_EXPIRED"
    APPLY_ATTEMPT_FAILED = "APPLY_ATTEMPT_FAILED"
    CHANGE_APPLIED = "CHANGE_APPLIED"
    CHANGE_FAILED = "CHANGE_FAILED"
    ROLLBACK_REQUESTED = "ROLLBACK_REQUESTED"
    CHANGE_ROLLED_BACK = "CHANGE_ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    PIPELINE_RUN_STARTED = "PIPELINE_RUN_STARTED"


def to_log_string(event: AuditEvent) -> str:
    """Format an event as a human-readable log entry"""
    return (
        f"[{event.timestamp.isoformat()}] "
        f"{event.event_type}: "
        f"Actor={event.actor_id} "
        f"Change={event.change_id} "
        f"Status={event.status}"
    )


class AuditTrail:
    """
    Builds, queries and verifies audit events for changes.
    """

    def __init__(self, store: ChangeStore, component_id: str = "engine"):
        """
        Initialize audit trail.

        Args:
            store: Change store holding the audit_events table
            component_id: Identifier used in log output
        """
        self.store = store
        self.component_id = component_id
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

    def build_event(
        self,
        event_type: AuditEventType,
        change: Change,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Build an unsaved event describing a change after a transition.

        The store signs and writes it alongside the change update.
        """
        return AuditEvent(
            event_id=f"evt-{uuid.uuid4().hex[:12]}",
            event_type=event_type.value,
            change_id=change.change_id,
            actor_id=actor_id,
            timestamp=datetime.now(timezone.utc),
            scope_id=change.scope_id,
            kind=change.kind.value,
            status=change.status.value,
            author_id=change.author_id,
            details=details or {}
        )

    def log_event(
        self,
        event_type: AuditEventType,
        change: Change,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Write a standalone event (one not tied to a change update).

        Returns:
            The signed, persisted event
        """
        event = self.build_event(event_type, change, actor_id, details)
        self.store.write_event(event)
        self.logger.info(to_log_string(event))
        return event

    def list_audit_log(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        page_size: int = 50
    ) -> AuditPage:
        """
        Query audit events, newest first.

        Args:
            filters: Any of scope_id, status, kind, author_id, change_id,
                event_type, actor_id, from, to
            page: 1-based page number
            page_size: Events per page (1..500)

        Returns:
            AuditPage with the matching total
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        filters = {key: value for key, value in (filters or {}).items() if value is not None}
        if 'from' in filters and 'to' in filters and filters['from'] > filters['to']:
            raise ValidationError("'from' must not be after 'to'")

        events, total = self.store.query_events(
            filters,
            limit=page_size,
            offset=(page - 1) * page_size
        )

        return AuditPage(items=events, page=page, page_size=page_size, total=total)

    def get_change_history(self, change_id: str) -> List[AuditEvent]:
        """Get complete history for a change, oldest first"""
        events, _ = self.store.query_events({'change_id': change_id})
        return list(reversed(events))

    def get_actor_actions(self, actor_id: str) -> List[AuditEvent]:
        """Get all actions by an actor, newest first"""
        events, _ = self.store.query_events({'actor_id': actor_id})
        return events

    def verify_event(self, event: AuditEvent) -> bool:
        """Check an event's HMAC signature"""
        if not event.signature:
            return False
        return event.signature == self.store.sign_event(event)

    def export_to_json(self, filename: str, filters: Optional[Dict[str, Any]] = None):
        """Export matching audit events to a JSON file, oldest first"""
        events, _ = self.store.query_events(filters)
        data = [event.to_dict() for event in reversed(events)]

        with open(filename, 'w') as f:
            json.dump(data, f, indent=2)

        self.logger.info(f"Exported {len(data)} events to {filename}")

    def generate_report(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Generate audit report for time period.

        Returns:
            Summary statistics
        """
        events, _ = self.store.query_events({'from': start_time, 'to': end_time})

        # Count by type
        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1

        # Count by resulting status
        by_status: Dict[str, int] = {}
        for event in events:
            if event.status:
                by_status[event.status] = by_status.get(event.status, 0) + 1

        # Unique actors
        actors = set(event.actor_id for event in events)

        return {
            'period': {
                'start': start_time.isoformat() if start_time else 'beginning',
                'end': end_time.isoformat() if end_time else 'now'
            },
            'total_events': len(events),
            'by_type': by_type,
            'by_status': by_status,
            'unique_actors': len(actors),
            'actors': sorted(actors)
        }


# Example usage:
"""
from changegate.approval.audit_trail import AuditTrail
from changegate.datastore import ChangeStore

audit = AuditTrail(ChangeStore("data/changegate.db"), "engine")

# Newest rejected changes in one table
page = audit.list_audit_log({'scope_id': 'tbl-orders', 'status': 'failed'}, page=1, page_size=20)

# Full history of one change
history = audit.get_change_history("chg-1a2b3c4d5e6f")
assert all(audit.verify_event(event) for event in history)

report = audit.generate_report()
print(f"Total events: {report['total_events']}")
"""
