"""
Pattern Store - the only repository for the automation engine.

Covers patterns, the append-only execution history, the approval queue,
audit rows (approvals, rejections, modifications, timeouts, confidence
changes), anomalies, the event log and cross-domain learnings.

Pattern-stat increments and approval decisions are single UPDATE statements so
concurrent writers never lose an increment and a queue row is decided once.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from opspilot.infrastructure.database import Database, retry_on_db_lock
from opspilot.observability.logging import get_logger
from opspilot.storage.models import (
    PRECONDITION_ERROR_PREFIX,
    Anomaly,
    ApprovalQueueEntry,
    Event,
    ExecutionRecord,
    Pattern,
    QueueStatus,
    utc_now,
)

logger = get_logger(__name__)


class WindowStats:
    """Execution counts for one pattern inside a time window."""

    __slots__ = ("total", "successes", "failures", "critical_failures")

    def __init__(self, total: int, successes: int, failures: int, critical_failures: int) -> None:
        self.total = total
        self.successes = successes
        self.failures = failures
        self.critical_failures = critical_failures

    @property
    def success_rate(self) -> float | None:
        if self.total == 0:
            return None
        return self.successes / self.total

    def __repr__(self) -> str:
        return (
            f"WindowStats(total={self.total}, successes={self.successes}, "
            f"failures={self.failures}, critical_failures={self.critical_failures})"
        )


class PatternStore:
    """
    Repository over the pattern store database.

    All methods use the database's connection pool; writes run in a
    transaction and are retried on lock contention.
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def save_pattern(self, pattern: Pattern) -> Pattern:
        """
        Insert or fully replace a pattern row.

        Side Effects:
            - Upserts a row in patterns
        """
        pattern.updated_at = utc_now()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO patterns (
                    id, decision_type, trigger_signature, logic, confidence_score,
                    auto_executable, execution_count, success_count, failure_count,
                    last_seen, source_module, parent_pattern_id, evolution_flagged,
                    created_at, updated_at
                ) VALUES (
                    :id, :decision_type, :trigger_signature, :logic, :confidence_score,
                    :auto_executable, :execution_count, :success_count, :failure_count,
                    :last_seen, :source_module, :parent_pattern_id, :evolution_flagged,
                    :created_at, :updated_at
                )
                ON CONFLICT(id) DO UPDATE SET
                    decision_type = excluded.decision_type,
                    trigger_signature = excluded.trigger_signature,
                    logic = excluded.logic,
                    confidence_score = excluded.confidence_score,
                    auto_executable = excluded.auto_executable,
                    execution_count = excluded.execution_count,
                    success_count = excluded.success_count,
                    failure_count = excluded.failure_count,
                    last_seen = excluded.last_seen,
                    source_module = excluded.source_module,
                    parent_pattern_id = excluded.parent_pattern_id,
                    evolution_flagged = excluded.evolution_flagged,
                    updated_at = excluded.updated_at
                """,
                pattern.to_db_dict(),
            )
        logger.debug("Saved pattern %s (%s)", pattern.id, pattern.trigger_signature)
        return pattern

    def get_pattern(self, pattern_id: str) -> Pattern | None:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        return Pattern.from_db_row(row) if row else None

    def list_patterns(self, auto_executable: bool | None = None) -> list[Pattern]:
        query = "SELECT * FROM patterns"
        params: tuple[Any, ...] = ()
        if auto_executable is not None:
            query += " WHERE auto_executable = ?"
            params = (int(auto_executable),)
        query += " ORDER BY confidence_score DESC, created_at"
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Pattern.from_db_row(row) for row in rows]

    def find_candidates(self, classification: str, signature: str, limit: int) -> list[Pattern]:
        """
        General lookup: same decision type, same signature, or catch-all 'general'.

        Exact-signature rows come first, then by confidence and usage.
        """
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM patterns
                WHERE decision_type = :classification
                   OR trigger_signature = :signature
                   OR decision_type = 'general'
                ORDER BY (trigger_signature = :signature) DESC,
                         confidence_score DESC,
                         execution_count DESC
                LIMIT :limit
                """,
                {"classification": classification, "signature": signature, "limit": limit},
            ).fetchall()
        return [Pattern.from_db_row(row) for row in rows]

    def find_module_candidates(
        self, module_name: str, signature: str, since: datetime, limit: int
    ) -> list[Pattern]:
        """Candidates for one domain module, restricted to recently seen patterns."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM patterns
                WHERE (decision_type = :module
                       OR trigger_signature LIKE :signature_like
                       OR decision_type = 'general')
                  AND COALESCE(last_seen, created_at) > :since
                ORDER BY confidence_score DESC, execution_count DESC
                LIMIT :limit
                """,
                {
                    "module": module_name,
                    "signature_like": f"%{signature}%",
                    "since": since.isoformat(),
                    "limit": limit,
                },
            ).fetchall()
        return [Pattern.from_db_row(row) for row in rows]

    @retry_on_db_lock()
    def record_outcome_stats(self, pattern_id: str, success: bool) -> None:
        """
        Atomically bump execution counters and last_seen.

        Side Effects:
            - Updates one patterns row
        """
        column = "success_count" if success else "failure_count"
        with self.db.transaction() as conn:
            conn.execute(
                f"""
                UPDATE patterns
                SET execution_count = execution_count + 1,
                    {column} = {column} + 1,
                    last_seen = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (utc_now().isoformat(), utc_now().isoformat(), pattern_id),
            )

    @retry_on_db_lock()
    def adjust_confidence(
        self, pattern_id: str, delta: float, floor: float, cap: float, reason: str
    ) -> tuple[float, float] | None:
        """
        Atomically add delta to confidence_score, clamped to [floor, cap].

        Returns:
            (old, new) confidence, or None if the pattern does not exist

        Side Effects:
            - Updates patterns.confidence_score
            - Appends a confidence_changes row
        """
        with self.db.transaction() as conn:
            before = conn.execute(
                "SELECT confidence_score FROM patterns WHERE id = ?", (pattern_id,)
            ).fetchone()
            if before is None:
                return None
            row = conn.execute(
                """
                UPDATE patterns
                SET confidence_score = MIN(:cap, MAX(:floor, confidence_score + :delta)),
                    updated_at = :now
                WHERE id = :id
                RETURNING confidence_score
                """,
                {
                    "cap": cap,
                    "floor": floor,
                    "delta": delta,
                    "now": utc_now().isoformat(),
                    "id": pattern_id,
                },
            ).fetchall()[0]
            old, new = before["confidence_score"], row["confidence_score"]
            self._log_confidence_change(conn, pattern_id, old, new, reason)
        return old, new

    @retry_on_db_lock()
    def set_auto_executable(self, pattern_id: str, value: bool) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE patterns SET auto_executable = ?, updated_at = ? WHERE id = ?",
                (int(value), utc_now().isoformat(), pattern_id),
            )
        return cursor.rowcount > 0

    @retry_on_db_lock()
    def flag_for_evolution(self, pattern_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE patterns SET evolution_flagged = 1, updated_at = ? "
                "WHERE id = ? AND evolution_flagged = 0",
                (utc_now().isoformat(), pattern_id),
            )
        return cursor.rowcount > 0

    @retry_on_db_lock()
    def decay_idle_patterns(self, idle_since: datetime, amount: float, floor: float) -> int:
        """
        Lower confidence of patterns unused since idle_since, never below floor.

        Returns:
            Number of patterns decayed
        """
        now = utc_now().isoformat()
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                UPDATE patterns
                SET confidence_score = MAX(:floor, confidence_score - :amount),
                    updated_at = :now
                WHERE COALESCE(last_seen, created_at) < :idle_since
                  AND confidence_score > :floor
                RETURNING id
                """,
                {"floor": floor, "amount": amount, "now": now, "idle_since": idle_since.isoformat()},
            ).fetchall()
        return len(rows)

    def find_fork(self, parent_id: str, logic_json: str) -> Pattern | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM patterns WHERE parent_pattern_id = ? AND logic = ?",
                (parent_id, logic_json),
            ).fetchone()
        return Pattern.from_db_row(row) if row else None

    # ------------------------------------------------------------------
    # Execution history
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def append_execution(self, record: ExecutionRecord) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pattern_execution_history (
                    pattern_id, reference_id, event_snapshot, confidence_at_execution,
                    was_auto_executed, was_modified, status, duration_ms, result,
                    error, failure_severity, executed_at
                ) VALUES (
                    :pattern_id, :reference_id, :event_snapshot, :confidence_at_execution,
                    :was_auto_executed, :was_modified, :status, :duration_ms, :result,
                    :error, :failure_severity, :executed_at
                )
                """,
                record.to_db_dict(),
            )
        record.id = cursor.lastrowid
        return cursor.lastrowid or 0

    def executions_for_reference(self, reference_id: str) -> list[ExecutionRecord]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pattern_execution_history WHERE reference_id = ? ORDER BY id",
                (reference_id,),
            ).fetchall()
        return [ExecutionRecord.from_db_row(row) for row in rows]

    def executions_for_pattern(self, pattern_id: str, limit: int = 50) -> list[ExecutionRecord]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pattern_execution_history WHERE pattern_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (pattern_id, limit),
            ).fetchall()
        return [ExecutionRecord.from_db_row(row) for row in rows]

    def execution_window(self, pattern_id: str, since: datetime) -> WindowStats:
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(status = 'success'), 0) AS successes,
                       COALESCE(SUM(status = 'failure'), 0) AS failures,
                       COALESCE(SUM(failure_severity = 'critical'), 0) AS critical_failures
                FROM pattern_execution_history
                WHERE pattern_id = ? AND executed_at > ?
                  AND (error IS NULL OR error NOT LIKE ?)
                """,
                (pattern_id, since.isoformat(), f"{PRECONDITION_ERROR_PREFIX}%"),
            ).fetchone()
        return WindowStats(
            row["total"], row["successes"], row["failures"], row["critical_failures"]
        )

    # ------------------------------------------------------------------
    # Approval queue
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def insert_queue_entry(self, entry: ApprovalQueueEntry) -> ApprovalQueueEntry:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pattern_approval_queue (
                    id, pattern_id, event_snapshot, confidence, reasoning, status,
                    decided_by, decided_at, decision_reason, modifications, created_at
                ) VALUES (
                    :id, :pattern_id, :event_snapshot, :confidence, :reasoning, :status,
                    :decided_by, :decided_at, :decision_reason, :modifications, :created_at
                )
                """,
                entry.to_db_dict(),
            )
        return entry

    def get_queue_entry(self, entry_id: str) -> ApprovalQueueEntry | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM pattern_approval_queue WHERE id = ?", (entry_id,)
            ).fetchone()
        return ApprovalQueueEntry.from_db_row(row) if row else None

    def list_queue(self, status: QueueStatus | None = QueueStatus.PENDING) -> list[ApprovalQueueEntry]:
        query = "SELECT * FROM pattern_approval_queue"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (QueueStatus(status).value,)
        query += " ORDER BY created_at"
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ApprovalQueueEntry.from_db_row(row) for row in rows]

    @retry_on_db_lock()
    def decide_queue_entry(
        self,
        entry_id: str,
        status: QueueStatus,
        decided_by: str,
        reason: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move a pending entry to a terminal status.

        Returns:
            True if this call made the transition, False if the row is missing
            or was already decided
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pattern_approval_queue
                SET status = ?, decided_by = ?, decided_at = ?,
                    decision_reason = ?, modifications = ?
                WHERE id = ? AND status = 'pending'
                """,
                (
                    QueueStatus(status).value,
                    decided_by,
                    utc_now().isoformat(),
                    reason,
                    json.dumps(modifications) if modifications else None,
                    entry_id,
                ),
            )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Audit rows
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def insert_modification(
        self,
        pattern_id: str,
        modification_type: str,
        changes: dict[str, Any],
        success: bool,
        reference_id: str | None = None,
        user_id: str | None = None,
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pattern_modifications (
                    pattern_id, reference_id, user_id, modification_type, changes,
                    success, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pattern_id,
                    reference_id,
                    user_id,
                    modification_type,
                    json.dumps(changes, sort_keys=True, default=str),
                    int(success),
                    utc_now().isoformat(),
                ),
            )

    def count_modifications(self, pattern_id: str, since: datetime) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pattern_modifications WHERE pattern_id = ? AND created_at > ?",
                (pattern_id, since.isoformat()),
            ).fetchone()
        return row[0]

    def list_modifications(self, pattern_id: str, since: datetime) -> list[dict[str, Any]]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT modification_type, changes, success, user_id, created_at
                FROM pattern_modifications
                WHERE pattern_id = ? AND created_at > ?
                ORDER BY id
                """,
                (pattern_id, since.isoformat()),
            ).fetchall()
        return [
            {
                "modification_type": row["modification_type"],
                "changes": json.loads(row["changes"]),
                "success": bool(row["success"]),
                "user_id": row["user_id"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def modification_ratios(self, since: datetime) -> list[tuple[str, int, int]]:
        """(pattern_id, modifications, executions) for patterns modified since the cutoff."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT m.pattern_id AS pattern_id,
                       COUNT(*) AS modifications,
                       (SELECT COUNT(*) FROM pattern_execution_history h
                        WHERE h.pattern_id = m.pattern_id AND h.executed_at > :since) AS executions
                FROM pattern_modifications m
                WHERE m.created_at > :since
                GROUP BY m.pattern_id
                """,
                {"since": since.isoformat()},
            ).fetchall()
        return [(row["pattern_id"], row["modifications"], row["executions"]) for row in rows]

    @retry_on_db_lock()
    def insert_rejection(
        self,
        pattern_id: str,
        reference_id: str,
        reason: str | None,
        event_snapshot: dict[str, Any],
        user_id: str | None = None,
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pattern_rejections (
                    pattern_id, reference_id, user_id, reason, event_snapshot, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    pattern_id,
                    reference_id,
                    user_id,
                    reason,
                    json.dumps(event_snapshot, default=str),
                    utc_now().isoformat(),
                ),
            )

    @retry_on_db_lock()
    def insert_approval(
        self, pattern_id: str, reference_id: str, source: str, user_id: str | None = None
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO pattern_approvals (pattern_id, reference_id, user_id, source, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (pattern_id, reference_id, user_id, source, utc_now().isoformat()),
            )

    @retry_on_db_lock()
    def insert_timeout_execution(self, pattern_id: str, suggestion_id: str, success: bool) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO pattern_timeout_executions "
                "(pattern_id, suggestion_id, success, created_at) VALUES (?, ?, ?, ?)",
                (pattern_id, suggestion_id, int(success), utc_now().isoformat()),
            )

    @staticmethod
    def _log_confidence_change(conn: Any, pattern_id: str, old: float, new: float, reason: str) -> None:
        conn.execute(
            "INSERT INTO confidence_changes "
            "(pattern_id, old_confidence, new_confidence, reason, created_at) VALUES (?, ?, ?, ?, ?)",
            (pattern_id, old, new, reason, utc_now().isoformat()),
        )

    @retry_on_db_lock()
    def log_confidence_change(self, pattern_id: str, old: float, new: float, reason: str) -> None:
        with self.db.transaction() as conn:
            self._log_confidence_change(conn, pattern_id, old, new, reason)

    def confidence_history(self, pattern_id: str) -> list[tuple[float, float, str]]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT old_confidence, new_confidence, reason FROM confidence_changes "
                "WHERE pattern_id = ? ORDER BY id",
                (pattern_id,),
            ).fetchall()
        return [(row[0], row[1], row[2]) for row in rows]

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def insert_anomaly(self, anomaly: Anomaly) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO anomalies (
                    id, types, severity, confidence, risk_level, reasons, event_snapshot,
                    requires_human, requires_immediate, escalated, created_at
                ) VALUES (
                    :id, :types, :severity, :confidence, :risk_level, :reasons, :event_snapshot,
                    :requires_human, :requires_immediate, :escalated, :created_at
                )
                """,
                anomaly.to_db_dict(),
            )

    @retry_on_db_lock()
    def insert_escalation(self, anomaly_id: str, severity: str, notified: bool) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO anomaly_escalations (anomaly_id, severity, notified, created_at) "
                "VALUES (?, ?, ?, ?)",
                (anomaly_id, severity, int(notified), utc_now().isoformat()),
            )

    def get_anomaly(self, anomaly_id: str) -> Anomaly | None:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM anomalies WHERE id = ?", (anomaly_id,)).fetchone()
        return Anomaly.from_db_row(row) if row else None

    def list_anomalies(self, limit: int = 50) -> list[Anomaly]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM anomalies ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [Anomaly.from_db_row(row) for row in rows]

    def count_escalations(self, anomaly_id: str) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM anomaly_escalations WHERE anomaly_id = ?", (anomaly_id,)
            ).fetchone()
        return row[0]

    def count_anomalies_since(self, since: datetime) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM anomalies WHERE created_at > ?", (since.isoformat(),)
            ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def append_event_log(self, event: Event) -> None:
        context = event.context
        actor = context.get("user_id") or context.get("customer_id")
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO event_log (kind, category, actor_id, source_ip, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    event.kind,
                    event.category,
                    str(actor) if actor is not None else None,
                    context.get("source_ip") or context.get("ip_address"),
                    utc_now().isoformat(),
                ),
            )

    def count_recent_events(self, actor_id: str | None, source_ip: str | None, since: datetime) -> int:
        if actor_id is None and source_ip is None:
            return 0
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM event_log
                WHERE created_at > ?
                  AND ((? IS NOT NULL AND actor_id = ?) OR (? IS NOT NULL AND source_ip = ?))
                """,
                (since.isoformat(), actor_id, actor_id, source_ip, source_ip),
            ).fetchone()
        return row[0]

    def distinct_kinds_since(self, actor_id: str, since: datetime) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(DISTINCT kind) FROM event_log WHERE actor_id = ? AND created_at > ?",
                (actor_id, since.isoformat()),
            ).fetchone()
        return row[0]

    def count_kind_category(self, kind: str, category: str) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM event_log WHERE kind = ? AND category = ?",
                (kind, category),
            ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Cross-domain learnings
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def insert_learning(
        self, source_module: str, pattern_id: str, insight: dict[str, Any], applicability: float
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO cross_domain_learnings (source_module, pattern_id, insight, "
                "applicability, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    source_module,
                    pattern_id,
                    json.dumps(insight, sort_keys=True, default=str),
                    applicability,
                    utc_now().isoformat(),
                ),
            )

    def list_learnings(self, source_module: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT source_module, pattern_id, insight, applicability FROM cross_domain_learnings"
        params: tuple[Any, ...] = ()
        if source_module:
            query += " WHERE source_module = ?"
            params = (source_module,)
        with self.db.connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            {
                "source_module": row["source_module"],
                "pattern_id": row["pattern_id"],
                "insight": json.loads(row["insight"]),
                "applicability": row["applicability"],
            }
            for row in rows
        ]
