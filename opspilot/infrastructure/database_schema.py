"""
Database schema for the pattern store.

All timestamps are ISO-8601 UTC strings written by the application, so range
filters compare them lexically.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from opspilot.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = (
    "patterns",
    "pattern_execution_history",
    "pattern_approval_queue",
    "pattern_modifications",
    "pattern_rejections",
    "pattern_approvals",
    "pattern_timeout_executions",
    "confidence_changes",
    "anomalies",
    "anomaly_escalations",
    "event_log",
    "cross_domain_learnings",
)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
        - Creates the parent directory if needed
        - Creates tables and indexes that don't exist yet
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS patterns (
                id TEXT PRIMARY KEY,
                decision_type TEXT NOT NULL,
                trigger_signature TEXT NOT NULL,
                logic TEXT NOT NULL,
                confidence_score REAL NOT NULL DEFAULT 0.5,
                auto_executable INTEGER NOT NULL DEFAULT 0,
                execution_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                last_seen TEXT,
                source_module TEXT NOT NULL DEFAULT 'general',
                parent_pattern_id TEXT,
                evolution_flagged INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_execution_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                reference_id TEXT,
                event_snapshot TEXT,
                confidence_at_execution REAL,
                was_auto_executed INTEGER NOT NULL DEFAULT 0,
                was_modified INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL CHECK (status IN ('success', 'failure')),
                duration_ms INTEGER NOT NULL DEFAULT 0,
                result TEXT,
                error TEXT,
                failure_severity TEXT,
                executed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_approval_queue (
                id TEXT PRIMARY KEY,
                pattern_id TEXT NOT NULL,
                event_snapshot TEXT,
                confidence REAL NOT NULL,
                reasoning TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'approved', 'rejected')),
                decided_by TEXT,
                decided_at TEXT,
                decision_reason TEXT,
                modifications TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_modifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                reference_id TEXT,
                user_id TEXT,
                modification_type TEXT NOT NULL,
                changes TEXT NOT NULL,
                success INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_rejections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                reference_id TEXT,
                user_id TEXT,
                reason TEXT,
                event_snapshot TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_approvals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                reference_id TEXT,
                user_id TEXT,
                source TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pattern_timeout_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                suggestion_id TEXT NOT NULL,
                success INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS confidence_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                old_confidence REAL NOT NULL,
                new_confidence REAL NOT NULL,
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS anomalies (
                id TEXT PRIMARY KEY,
                types TEXT NOT NULL,
                severity TEXT NOT NULL
                    CHECK (severity IN ('low', 'medium', 'high', 'critical')),
                confidence REAL NOT NULL,
                risk_level TEXT,
                reasons TEXT NOT NULL,
                event_snapshot TEXT,
                requires_human INTEGER NOT NULL DEFAULT 0,
                requires_immediate INTEGER NOT NULL DEFAULT 0,
                escalated INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS anomaly_escalations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                anomaly_id TEXT NOT NULL,
                severity TEXT NOT NULL,
                notified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT,
                category TEXT,
                actor_id TEXT,
                source_ip TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cross_domain_learnings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_module TEXT NOT NULL,
                pattern_id TEXT NOT NULL,
                insight TEXT NOT NULL,
                applicability REAL NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_patterns_signature ON patterns(trigger_signature);
            CREATE INDEX IF NOT EXISTS idx_patterns_type ON patterns(decision_type);
            CREATE INDEX IF NOT EXISTS idx_history_pattern_time
                ON pattern_execution_history(pattern_id, executed_at);
            CREATE INDEX IF NOT EXISTS idx_history_reference
                ON pattern_execution_history(reference_id);
            CREATE INDEX IF NOT EXISTS idx_queue_status ON pattern_approval_queue(status);
            CREATE INDEX IF NOT EXISTS idx_modifications_pattern_time
                ON pattern_modifications(pattern_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_event_log_actor_time ON event_log(actor_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_event_log_ip_time ON event_log(source_ip, created_at);
            CREATE INDEX IF NOT EXISTS idx_anomalies_time ON anomalies(created_at);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.debug("Schema ready at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check every expected table exists

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {row[0] for row in rows}
    missing = [name for name in EXPECTED_TABLES if name not in present]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
