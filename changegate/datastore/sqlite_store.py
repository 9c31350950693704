"""
ChangeStore: Durable Change Storage

SQLite-backed store for changes, approval records, audit events, leases,
environments, pipelines and pipeline runs.

Provides optimistic locking on changes (version column), append-only
approval records and audit events (enforced by triggers), and TTL'd leases
for at-most-once side effects. Every call opens its own connection so the
store can be shared by worker threads.
"""

import sqlite3
import json
import hmac
import hashlib
import uuid
import logging
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple
from contextlib import contextmanager

from .models import (
    Change, ChangeStatus, ApprovalRecord, ApprovalStepDefinition, AuditEvent,
    Lease, LeaseType, Environment, Pipeline, PipelineRun, StoreResult
)


def _timestamp(value: datetime) -> str:
    """UTC ISO-8601 with a fixed microsecond width, so stored values compare as text"""
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


class ChangeStore:
    """
    Change storage layer.

    Thread-safe through per-call connections; write conflicts between
    workers are detected with optimistic locking rather than in-process locks.
    """

    def __init__(
        self,
        db_path: str = "data/changegate.db",
        secret_key: Optional[bytes] = None,
        timeout: float = 10.0
    ):
        """
        Initialize change store.

        Args:
            db_path: Path to SQLite database file
            secret_key: Secret key for HMAC signatures (audit log integrity)
            timeout: Seconds to wait on a locked database before failing
        """
        self.logger = logging.getLogger(__name__)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

        self.secret_key = secret_key or b"changegate-dev-secret-change-in-production"

        self._initialize_schema()

        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

        self.logger.debug(f"Change store ready at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections"""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        """Create tables if they don't exist"""
        schema = """
        -- Changes (mutable, versioned)
        CREATE TABLE IF NOT EXISTS changes (
            change_id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            payload TEXT NOT NULL,
            author_id TEXT NOT NULL,
            scope_id TEXT NOT NULL,
            status TEXT NOT NULL,
            step_plan TEXT NOT NULL DEFAULT '[]',
            environment_type TEXT,
            reason TEXT,
            error TEXT,
            rollback_data TEXT,
            apply_attempts INTEGER NOT NULL DEFAULT 0,
            run_id TEXT,
            hop_index INTEGER,
            linked_change_id TEXT,
            created_at TEXT NOT NULL,
            submitted_at TEXT,
            applied_at TEXT,
            updated_at TEXT,
            version INTEGER NOT NULL DEFAULT 0
        );

        -- Approval records (append-only; latest vote per approver/step is effective)
        CREATE TABLE IF NOT EXISTS approval_records (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            record_id TEXT UNIQUE NOT NULL,
            change_id TEXT NOT NULL,
            step_index INTEGER NOT NULL,
            approver_id TEXT NOT NULL,
            approver_role TEXT NOT NULL,
            decision TEXT NOT NULL,
            comments TEXT,
            timestamp TEXT NOT NULL,
            FOREIGN KEY (change_id) REFERENCES changes(change_id)
        );

        CREATE TRIGGER IF NOT EXISTS prevent_approval_update
        BEFORE UPDATE ON approval_records
        BEGIN
            SELECT RAISE(FAIL, 'Approval records are append-only - updates not allowed');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_approval_delete
        BEFORE DELETE ON approval_records
        BEGIN
            SELECT RAISE(FAIL, 'Approval records are append-only - deletions not allowed');
        END;

        -- Audit events (immutable projection of every transition and vote)
        CREATE TABLE IF NOT EXISTS audit_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id TEXT UNIQUE NOT NULL,
            event_type TEXT NOT NULL,
            change_id TEXT NOT NULL,
            scope_id TEXT,
            kind TEXT,
            status TEXT,
            author_id TEXT,
            actor_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            details TEXT NOT NULL,
            signature TEXT NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS prevent_event_update
        BEFORE UPDATE ON audit_events
        BEGIN
            SELECT RAISE(FAIL, 'Audit log is immutable - updates not allowed');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_event_delete
        BEFORE DELETE ON audit_events
        BEGIN
            SELECT RAISE(FAIL, 'Audit log is immutable - deletions not allowed');
        END;

        -- Leases guarding apply/revert side effects
        CREATE TABLE IF NOT EXISTS leases (
            lease_id TEXT PRIMARY KEY,
            subject_id TEXT NOT NULL,
            lease_type TEXT NOT NULL,
            held_by TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            UNIQUE (subject_id, lease_type)
        );

        CREATE TABLE IF NOT EXISTS environments (
            environment_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            env_type TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pipelines (
            pipeline_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            environments TEXT NOT NULL,
            auto_promote INTEGER NOT NULL DEFAULT 0,
            requires_approval INTEGER NOT NULL DEFAULT 1,
            gated_environments TEXT
        );

        CREATE TABLE IF NOT EXISTS pipeline_runs (
            run_id TEXT PRIMARY KEY,
            pipeline_id TEXT NOT NULL,
            author_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (pipeline_id) REFERENCES pipelines(pipeline_id)
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_changes_scope_status ON changes(scope_id, status);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_changes_run_hop ON changes(run_id, hop_index)
            WHERE run_id IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_changes_linked ON changes(linked_change_id);
        CREATE INDEX IF NOT EXISTS idx_approvals_change ON approval_records(change_id, step_index);
        CREATE INDEX IF NOT EXISTS idx_events_scope_status ON audit_events(scope_id, status);
        CREATE INDEX IF NOT EXISTS idx_events_change ON audit_events(change_id);
        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON audit_events(timestamp);
        """

        with self._get_connection() as conn:
            conn.executescript(schema)

    # ===== Change Operations =====

    def insert_change(self, change: Change, event: Optional[AuditEvent] = None) -> StoreResult:
        """
        Insert a new change (and its creation event) atomically.

        Returns:
            StoreResult with the change_id as data
        """
        now = datetime.now(timezone.utc)
        change.change_id = change.change_id or f"chg-{uuid.uuid4().hex[:12]}"
        change.created_at = change.created_at or now
        change.updated_at = now
        change.version = 0

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO changes (
                        change_id, kind, payload, author_id, scope_id, status,
                        step_plan, environment_type, reason, error, rollback_data,
                        apply_attempts, run_id, hop_index, linked_change_id,
                        created_at, submitted_at, applied_at, updated_at, version
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        change.change_id, change.kind.value, json.dumps(change.payload),
                        change.author_id, change.scope_id, change.status.value,
                        json.dumps([step.to_dict() for step in change.step_plan]),
                        change.environment_type.value if change.environment_type else None,
                        change.reason.value if change.reason else None,
                        change.error,
                        json.dumps(change.rollback_data) if change.rollback_data is not None else None,
                        change.apply_attempts, change.run_id, change.hop_index,
                        change.linked_change_id,
                        _timestamp(change.created_at),
                        _timestamp(change.submitted_at) if change.submitted_at else None,
                        _timestamp(change.applied_at) if change.applied_at else None,
                        _timestamp(change.updated_at), 0
                    )
                )

                if event:
                    self._insert_event(conn, event)
        except sqlite3.IntegrityError as e:
            # run_id/hop_index is unique: each pipeline hop exists once
            return StoreResult(
                success=False,
                error=f"Change {change.change_id} conflicts with an existing change: {e}",
                conflict=True
            )

        return StoreResult(success=True, data=change.change_id)

    def update_change(
        self,
        change: Change,
        event: Optional[AuditEvent] = None,
        record: Optional[ApprovalRecord] = None,
        unless_leased: Optional[LeaseType] = None
    ) -> StoreResult:
        """
        Write a change back with optimistic locking.

        The row is only updated if its version still equals change.version.
        The optional approval record and audit event are written in the same
        transaction, so a lost race leaves nothing behind. On success
        change.version is advanced to the stored value.

        Args:
            change: Change carrying the version it was read at
            event: Audit event to append with the write
            record: Approval record to append with the write
            unless_leased: Skip the write while a live lease of this type exists

        Returns:
            StoreResult with success=False and conflict=True on version mismatch
        """
        now = datetime.now(timezone.utc)

        query = """
            UPDATE changes SET
                status = ?, step_plan = ?, reason = ?, error = ?,
                rollback_data = ?, apply_attempts = ?, submitted_at = ?,
                applied_at = ?, updated_at = ?, version = version + 1
            WHERE change_id = ? AND version = ?
        """
        params: List[Any] = [
            change.status.value,
            json.dumps([step.to_dict() for step in change.step_plan]),
            change.reason.value if change.reason else None,
            change.error,
            json.dumps(change.rollback_data) if change.rollback_data is not None else None,
            change.apply_attempts,
            _timestamp(change.submitted_at) if change.submitted_at else None,
            _timestamp(change.applied_at) if change.applied_at else None,
            _timestamp(now),
            change.change_id, change.version
        ]

        if unless_leased:
            query += """
                AND NOT EXISTS (
                    SELECT 1 FROM leases
                    WHERE subject_id = changes.change_id
                    AND lease_type = ? AND expires_at > ?
                )
            """
            params.extend([unless_leased.value, _timestamp(now)])

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)

            if cursor.rowcount == 0:
                return StoreResult(
                    success=False,
                    error="CONFLICT: Version mismatch - change was modified by another process",
                    conflict=True
                )

            if record:
                self._insert_record(conn, record)
            if event:
                self._insert_event(conn, event)

        change.version += 1
        change.updated_at = now
        return StoreResult(success=True, data=change.change_id)

    def get_change(self, change_id: str) -> Optional[Change]:
        """Get change by ID"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM changes WHERE change_id = ?",
                (change_id,)
            )
            row = cursor.fetchone()
            if row:
                return self._row_to_change(row)
            return None

    def list_changes(
        self,
        scope_id: Optional[str] = None,
        status: Optional[ChangeStatus] = None,
        run_id: Optional[str] = None,
        linked_change_id: Optional[str] = None,
        submitted_before: Optional[datetime] = None
    ) -> List[Change]:
        """List changes matching all given filters, oldest first"""
        clauses, params = [], []

        if scope_id:
            clauses.append("scope_id = ?")
            params.append(scope_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if run_id:
            clauses.append("run_id = ?")
            params.append(run_id)
        if linked_change_id:
            clauses.append("linked_change_id = ?")
            params.append(linked_change_id)
        if submitted_before:
            clauses.append("submitted_at IS NOT NULL AND submitted_at < ?")
            params.append(_timestamp(submitted_before))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "ORDER BY hop_index" if run_id else "ORDER BY created_at"

        with self._get_connection() as conn:
            cursor = conn.execute(f"SELECT * FROM changes {where} {order}", params)
            return [self._row_to_change(row) for row in cursor.fetchall()]

    # ===== Approval Record Operations =====

    def list_approval_records(self, change_id: str) -> List[ApprovalRecord]:
        """
        Effective approval records for a change.

        At most one record per (approver_id, step_index): the latest vote.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM approval_records a
                WHERE a.change_id = ?
                AND a.seq = (
                    SELECT MAX(b.seq) FROM approval_records b
                    WHERE b.change_id = a.change_id
                    AND b.approver_id = a.approver_id
                    AND b.step_index = a.step_index
                )
                ORDER BY a.seq
                """,
                (change_id,)
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def list_vote_history(self, change_id: str) -> List[ApprovalRecord]:
        """Every vote ever cast on a change, superseded ones included"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM approval_records WHERE change_id = ? ORDER BY seq",
                (change_id,)
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def _insert_record(self, conn: sqlite3.Connection, record: ApprovalRecord):
        record.record_id = record.record_id or f"apr-{uuid.uuid4().hex[:12]}"
        conn.execute(
            """
            INSERT INTO approval_records (
                record_id, change_id, step_index, approver_id, approver_role,
                decision, comments, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id, record.change_id, record.step_index,
                record.approver_id, record.approver_role.value,
                record.decision.value, record.comments,
                _timestamp(record.timestamp)
            )
        )

    # ===== Audit Event Operations =====

    def write_event(self, event: AuditEvent) -> StoreResult:
        """
        Write an immutable event to the audit log.

        Automatically signs the event with HMAC for tamper-evidence.
        """
        with self._get_connection() as conn:
            self._insert_event(conn, event)

        return StoreResult(success=True, data=event.event_id)

    def sign_event(self, event: AuditEvent) -> str:
        """Compute the HMAC-SHA256 signature of an event"""
        event_content = (
            f"{event.event_type}{event.change_id}{event.actor_id}"
            f"{_timestamp(event.timestamp)}{json.dumps(event.details, sort_keys=True, default=str)}"
        )
        return hmac.new(
            self.secret_key,
            event_content.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def _insert_event(self, conn: sqlite3.Connection, event: AuditEvent):
        event.event_id = event.event_id or f"evt-{uuid.uuid4().hex[:12]}"
        event.signature = self.sign_event(event)

        conn.execute(
            """
            INSERT INTO audit_events (
                event_id, event_type, change_id, scope_id, kind, status,
                author_id, actor_id, timestamp, details, signature
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id, event.event_type, event.change_id,
                event.scope_id, event.kind, event.status, event.author_id,
                event.actor_id, _timestamp(event.timestamp),
                json.dumps(event.details, sort_keys=True, default=str),
                event.signature
            )
        )

    def query_events(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[AuditEvent], int]:
        """
        Query audit events, newest first.

        Supported filters: change_id, event_type, scope_id, status, kind,
        author_id, actor_id, from (datetime, inclusive), to (datetime, inclusive).

        Returns:
            (events, total_matching) tuple
        """
        filters = filters or {}
        clauses, params = [], []

        for column in ('change_id', 'event_type', 'scope_id', 'status', 'kind', 'author_id', 'actor_id'):
            value = filters.get(column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(getattr(value, 'value', value))

        if filters.get('from') is not None:
            clauses.append("timestamp >= ?")
            params.append(_timestamp(filters['from']))
        if filters.get('to') is not None:
            clauses.append("timestamp <= ?")
            params.append(_timestamp(filters['to']))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM audit_events {where}", params
            ).fetchone()[0]

            query = f"SELECT * FROM audit_events {where} ORDER BY seq DESC"
            page_params = list(params)
            if limit is not None:
                query += " LIMIT ? OFFSET ?"
                page_params.extend([limit, offset])

            cursor = conn.execute(query, page_params)
            events = [self._row_to_event(row) for row in cursor.fetchall()]

        return events, total

    # ===== Lease Operations =====

    def acquire_lease(
        self,
        subject_id: str,
        lease_type: LeaseType,
        held_by: str,
        ttl_seconds: int = 300
    ) -> StoreResult:
        """
        Acquire an exclusive lease.

        Fails if an unexpired lease already exists for the same subject+type.
        """
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)
        lease_id = f"lease-{uuid.uuid4().hex[:12]}"

        try:
            with self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM leases WHERE subject_id = ? AND lease_type = ? AND expires_at < ?",
                    (subject_id, lease_type.value, _timestamp(now))
                )
                conn.execute(
                    """
                    INSERT INTO leases (lease_id, subject_id, lease_type, held_by, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (lease_id, subject_id, lease_type.value, held_by, _timestamp(now), _timestamp(expires_at))
                )
        except sqlite3.IntegrityError:
            existing = self.check_lease(subject_id, lease_type)
            holder = existing.held_by if existing else "another worker"
            return StoreResult(success=False, error=f"Lease already held by {holder}", conflict=True)

        return StoreResult(success=True, data=lease_id)

    def release_lease(self, lease_id: str, held_by: str) -> StoreResult:
        """Release a lease (only by the holder)"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM leases WHERE lease_id = ? AND held_by = ?",
                (lease_id, held_by)
            )

            if cursor.rowcount == 0:
                return StoreResult(success=False, error="Lease not found or not held by you")

            return StoreResult(success=True)

    def check_lease(self, subject_id: str, lease_type: LeaseType) -> Optional[Lease]:
        """Return the live lease for subject+type, if any"""
        now = datetime.now(timezone.utc)

        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM leases WHERE subject_id = ? AND lease_type = ? AND expires_at > ?",
                (subject_id, lease_type.value, _timestamp(now))
            )
            row = cursor.fetchone()
            if row:
                return Lease(
                    lease_id=row['lease_id'],
                    subject_id=row['subject_id'],
                    lease_type=LeaseType(row['lease_type']),
                    held_by=row['held_by'],
                    acquired_at=datetime.fromisoformat(row['acquired_at']),
                    expires_at=datetime.fromisoformat(row['expires_at'])
                )
            return None

    # ===== Environment & Pipeline Operations =====

    def insert_environment(self, environment: Environment) -> StoreResult:
        """Insert a deployment environment"""
        environment.environment_id = environment.environment_id or f"env-{uuid.uuid4().hex[:8]}"
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT INTO environments (environment_id, name, env_type) VALUES (?, ?, ?)",
                    (environment.environment_id, environment.name, environment.env_type.value)
                )
        except sqlite3.IntegrityError:
            return StoreResult(
                success=False,
                error=f"Environment {environment.environment_id} already exists",
                conflict=True
            )
        return StoreResult(success=True, data=environment.environment_id)

    def get_environment(self, environment_id: str) -> Optional[Environment]:
        """Get environment by ID"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM environments WHERE environment_id = ?",
                (environment_id,)
            ).fetchone()
            return self._row_to_environment(row) if row else None

    def list_environments(self) -> List[Environment]:
        """All environments, by name"""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM environments ORDER BY name, environment_id")
            return [self._row_to_environment(row) for row in cursor.fetchall()]

    def insert_pipeline(self, pipeline: Pipeline) -> StoreResult:
        """Insert a deployment pipeline"""
        pipeline.pipeline_id = pipeline.pipeline_id or f"pipe-{uuid.uuid4().hex[:8]}"
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO pipelines (
                        pipeline_id, name, environments, auto_promote,
                        requires_approval, gated_environments
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pipeline.pipeline_id, pipeline.name,
                        json.dumps(pipeline.environments),
                        int(pipeline.auto_promote), int(pipeline.requires_approval),
                        json.dumps(pipeline.gated_environments)
                        if pipeline.gated_environments is not None else None
                    )
                )
        except sqlite3.IntegrityError:
            return StoreResult(
                success=False,
                error=f"Pipeline {pipeline.pipeline_id} already exists",
                conflict=True
            )
        return StoreResult(success=True, data=pipeline.pipeline_id)

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        """Get pipeline by ID"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipelines WHERE pipeline_id = ?",
                (pipeline_id,)
            ).fetchone()
            return self._row_to_pipeline(row) if row else None

    def list_pipelines(self) -> List[Pipeline]:
        """All pipelines, by name"""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM pipelines ORDER BY name, pipeline_id")
            return [self._row_to_pipeline(row) for row in cursor.fetchall()]

    def insert_run(self, run: PipelineRun, event: Optional[AuditEvent] = None) -> StoreResult:
        """Insert a pipeline run header"""
        run.run_id = run.run_id or f"run-{uuid.uuid4().hex[:12]}"
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_runs (run_id, pipeline_id, author_id, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run.run_id, run.pipeline_id, run.author_id,
                    json.dumps(run.payload), _timestamp(run.created_at)
                )
            )
            if event:
                self._insert_event(conn, event)
        return StoreResult(success=True, data=run.run_id)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        """Get a run header with its hops (state left for the promoter to derive)"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_runs WHERE run_id = ?",
                (run_id,)
            ).fetchone()

        if not row:
            return None

        return PipelineRun(
            run_id=row['run_id'],
            pipeline_id=row['pipeline_id'],
            author_id=row['author_id'],
            payload=json.loads(row['payload']),
            created_at=datetime.fromisoformat(row['created_at']),
            hops=self.list_changes(run_id=run_id)
        )

    # ===== Helper Methods =====

    def _row_to_environment(self, row: sqlite3.Row) -> Environment:
        return Environment(
            environment_id=row['environment_id'],
            name=row['name'],
            env_type=row['env_type']
        )

    def _row_to_pipeline(self, row: sqlite3.Row) -> Pipeline:
        return Pipeline(
            pipeline_id=row['pipeline_id'],
            name=row['name'],
            environments=json.loads(row['environments']),
            auto_promote=bool(row['auto_promote']),
            requires_approval=bool(row['requires_approval']),
            gated_environments=json.loads(row['gated_environments'])
            if row['gated_environments'] else None
        )

    def _row_to_change(self, row: sqlite3.Row) -> Change:
        """Convert database row to Change object"""
        return Change(
            change_id=row['change_id'],
            kind=row['kind'],
            payload=json.loads(row['payload']),
            author_id=row['author_id'],
            scope_id=row['scope_id'],
            status=row['status'],
            step_plan=[ApprovalStepDefinition.from_dict(s) for s in json.loads(row['step_plan'])],
            version=row['version'],
            environment_type=row['environment_type'],
            reason=row['reason'],
            error=row['error'],
            rollback_data=json.loads(row['rollback_data']) if row['rollback_data'] is not None else None,
            apply_attempts=row['apply_attempts'],
            run_id=row['run_id'],
            hop_index=row['hop_index'],
            linked_change_id=row['linked_change_id'],
            created_at=datetime.fromisoformat(row['created_at']),
            submitted_at=datetime.fromisoformat(row['submitted_at']) if row['submitted_at'] else None,
            applied_at=datetime.fromisoformat(row['applied_at']) if row['applied_at'] else None,
            updated_at=datetime.fromisoformat(row['updated_at']) if row['updated_at'] else None
        )

    def _row_to_record(self, row: sqlite3.Row) -> ApprovalRecord:
        """Convert database row to ApprovalRecord object"""
        return ApprovalRecord(
            record_id=row['record_id'],
            change_id=row['change_id'],
            step_index=row['step_index'],
            approver_id=row['approver_id'],
            approver_role=row['approver_role'],
            decision=row['decision'],
            comments=row['comments'],
            timestamp=datetime.fromisoformat(row['timestamp'])
        )

    def _row_to_event(self, row: sqlite3.Row) -> AuditEvent:
        """Convert database row to AuditEvent object"""
        return AuditEvent(
            event_id=row['event_id'],
            event_type=row['event_type'],
            change_id=row['change_id'],
            actor_id=row['actor_id'],
            timestamp=datetime.fromisoformat(row['timestamp']),
            scope_id=row['scope_id'],
            kind=row['kind'],
            status=row['status'],
            author_id=row['author_id'],
            details=json.loads(row['details']),
            signature=row['signature']
        )
