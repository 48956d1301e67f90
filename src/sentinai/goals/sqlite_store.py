"""SQLite-backed durable goal store.

Models are stored as JSON payloads next to the columns needed for ordering
and guards. Lease acquisition and idempotency registration are single
``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` statements, so they stay
atomic across processes sharing the database file.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from .exceptions import GoalStoreError
from .models import (
    AutonomousGoalCandidate,
    GoalDlqItem,
    GoalExecutionCheckpoint,
    GoalIdempotencyRecord,
    GoalLeaseRecord,
    GoalLearningEpisode,
    GoalQueueItem,
    GoalStatus,
    GoalSuppressionRecord,
    ensure_utc,
)
from .store import GoalStore

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA = """
CREATE TABLE IF NOT EXISTS goal_candidates (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    candidate_id TEXT NOT NULL UNIQUE,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goal_queue (
    goal_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    score_total INTEGER NOT NULL,
    risk_rank INTEGER NOT NULL,
    enqueued_at TEXT NOT NULL,
    next_attempt_at TEXT,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_goal_queue_dispatch
ON goal_queue(status, score_total DESC, risk_rank DESC, enqueued_at, goal_id);

CREATE TABLE IF NOT EXISTS goal_suppression (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goal_dlq (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    goal_id TEXT NOT NULL UNIQUE,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goal_leases (
    goal_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    leased_at TEXT NOT NULL,
    lease_expires_at TEXT NOT NULL,
    heartbeat_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS goal_checkpoints (
    goal_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goal_idempotency (
    key TEXT PRIMARY KEY,
    goal_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goal_runtime (
    name TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS goal_learning_episodes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    episode_id TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""

_TABLES = (
    "goal_candidates",
    "goal_queue",
    "goal_suppression",
    "goal_dlq",
    "goal_leases",
    "goal_checkpoints",
    "goal_idempotency",
    "goal_runtime",
    "goal_learning_episodes",
)

_ACTIVE_GOAL = "active_goal_id"

_QUEUE_ORDER = "ORDER BY score_total DESC, risk_rank DESC, enqueued_at, goal_id"


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp that sorts lexicographically."""
    return ensure_utc(value).strftime(_TS_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _lease_from_row(row: sqlite3.Row) -> GoalLeaseRecord:
    return GoalLeaseRecord(
        goal_id=row["goal_id"],
        owner_id=row["owner_id"],
        leased_at=_parse_ts(row["leased_at"]),
        lease_expires_at=_parse_ts(row["lease_expires_at"]),
        heartbeat_at=_parse_ts(row["heartbeat_at"]),
        version=row["version"],
    )


class SQLiteGoalStore(GoalStore):
    """Durable goal store on a WAL-mode SQLite database."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    # candidates

    def add_candidate(self, candidate: AutonomousGoalCandidate) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO goal_candidates(candidate_id, payload) VALUES (?, ?)",
                    (candidate.id, candidate.model_dump_json()),
                )

    def list_candidates(self, limit: int = 50) -> List[AutonomousGoalCandidate]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM goal_candidates ORDER BY seq DESC LIMIT ?",
                (max(0, limit),),
            ).fetchall()
        return [AutonomousGoalCandidate.model_validate_json(row["payload"]) for row in rows]

    # queue

    def _write_queue_item(self, item: GoalQueueItem) -> None:
        self._conn.execute(
            """
            INSERT INTO goal_queue(goal_id, status, score_total, risk_rank, enqueued_at, next_attempt_at, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(goal_id) DO UPDATE SET
                status = excluded.status,
                score_total = excluded.score_total,
                risk_rank = excluded.risk_rank,
                enqueued_at = excluded.enqueued_at,
                next_attempt_at = excluded.next_attempt_at,
                payload = excluded.payload
            """,
            (
                item.goal_id,
                item.status.value,
                item.score.total,
                item.risk.rank,
                _ts(item.enqueued_at),
                _ts(item.next_attempt_at) if item.next_attempt_at else None,
                item.model_dump_json(),
            ),
        )

    def upsert_queue_item(self, item: GoalQueueItem) -> None:
        with self._lock:
            with self._conn:
                self._write_queue_item(item)

    def get_queue_item(self, goal_id: str) -> Optional[GoalQueueItem]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM goal_queue WHERE goal_id = ?", (goal_id,)
            ).fetchone()
        return GoalQueueItem.model_validate_json(row["payload"]) if row else None

    def list_queue(
        self,
        limit: int = 100,
        statuses: Optional[Iterable[GoalStatus]] = None,
    ) -> List[GoalQueueItem]:
        params: List[Any] = []
        where = ""
        if statuses is not None:
            values = [GoalStatus(status).value for status in statuses]
            if not values:
                return []
            where = f"WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        params.append(max(0, limit))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT payload FROM goal_queue {where} {_QUEUE_ORDER} LIMIT ?",
                params,
            ).fetchall()
        return [GoalQueueItem.model_validate_json(row["payload"]) for row in rows]

    def next_due_item(self, now: datetime) -> Optional[GoalQueueItem]:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT payload FROM goal_queue
                WHERE status = 'queued'
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                {_QUEUE_ORDER}
                LIMIT 1
                """,
                (_ts(now),),
            ).fetchone()
        return GoalQueueItem.model_validate_json(row["payload"]) if row else None

    def compare_and_update(
        self,
        goal_id: str,
        expected_statuses: Iterable[GoalStatus],
        updates: Mapping[str, Any],
    ) -> Optional[GoalQueueItem]:
        expected = {GoalStatus(status) for status in expected_statuses}
        with self._lock:
            with self._conn:
                row = self._conn.execute(
                    "SELECT status, payload FROM goal_queue WHERE goal_id = ?",
                    (goal_id,),
                ).fetchone()
                if row is None or GoalStatus(row["status"]) not in expected:
                    return None
                current = GoalQueueItem.model_validate_json(row["payload"])
                updated = current.model_copy(update=dict(updates))
                cursor = self._conn.execute(
                    """
                    UPDATE goal_queue
                    SET status = ?, next_attempt_at = ?, payload = ?
                    WHERE goal_id = ? AND status = ?
                    """,
                    (
                        updated.status.value,
                        _ts(updated.next_attempt_at) if updated.next_attempt_at else None,
                        updated.model_dump_json(),
                        goal_id,
                        row["status"],
                    ),
                )
                if cursor.rowcount != 1:
                    return None
        return updated

    # suppression

    def add_suppression_record(self, record: GoalSuppressionRecord) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO goal_suppression(record_id, payload) VALUES (?, ?)",
                    (record.id, record.model_dump_json()),
                )

    def list_suppression_records(self, limit: int = 50) -> List[GoalSuppressionRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM goal_suppression ORDER BY seq DESC LIMIT ?",
                (max(0, limit),),
            ).fetchall()
        return [GoalSuppressionRecord.model_validate_json(row["payload"]) for row in rows]

    # DLQ

    def add_dlq_item(self, item: GoalDlqItem) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO goal_dlq(goal_id, payload) VALUES (?, ?)",
                    (item.goal_id, item.model_dump_json()),
                )

    def get_dlq_item(self, goal_id: str) -> Optional[GoalDlqItem]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM goal_dlq WHERE goal_id = ?", (goal_id,)
            ).fetchone()
        return GoalDlqItem.model_validate_json(row["payload"]) if row else None

    def list_dlq_items(self, limit: int = 50) -> List[GoalDlqItem]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM goal_dlq ORDER BY seq DESC LIMIT ?",
                (max(0, limit),),
            ).fetchall()
        return [GoalDlqItem.model_validate_json(row["payload"]) for row in rows]

    def remove_dlq_item(self, goal_id: str) -> bool:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM goal_dlq WHERE goal_id = ?", (goal_id,)
                )
        return cursor.rowcount > 0

    # leases

    def get_lease(self, goal_id: str) -> Optional[GoalLeaseRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM goal_leases WHERE goal_id = ?", (goal_id,)
            ).fetchone()
        return _lease_from_row(row) if row else None

    def try_acquire_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        now_ts = _ts(now)
        expires_ts = _ts(ensure_utc(now) + timedelta(seconds=ttl_seconds))
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO goal_leases(goal_id, owner_id, leased_at, lease_expires_at, heartbeat_at, version)
                    VALUES (?, ?, ?, ?, ?, 1)
                    ON CONFLICT(goal_id) DO UPDATE SET
                        owner_id = excluded.owner_id,
                        leased_at = excluded.leased_at,
                        lease_expires_at = excluded.lease_expires_at,
                        heartbeat_at = excluded.heartbeat_at,
                        version = goal_leases.version + 1
                    WHERE goal_leases.lease_expires_at <= ?
                    """,
                    (goal_id, owner_id, now_ts, expires_ts, now_ts, now_ts),
                )
                if cursor.rowcount == 0:
                    return None
                row = self._conn.execute(
                    "SELECT * FROM goal_leases WHERE goal_id = ?", (goal_id,)
                ).fetchone()
        if row is None:
            raise GoalStoreError(f"Lease for goal {goal_id} vanished after acquisition")
        return _lease_from_row(row)

    def renew_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        now_ts = _ts(now)
        expires_ts = _ts(ensure_utc(now) + timedelta(seconds=ttl_seconds))
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    """
                    UPDATE goal_leases SET lease_expires_at = ?, heartbeat_at = ?
                    WHERE goal_id = ? AND owner_id = ?
                    """,
                    (expires_ts, now_ts, goal_id, owner_id),
                )
                if cursor.rowcount == 0:
                    return None
                row = self._conn.execute(
                    "SELECT * FROM goal_leases WHERE goal_id = ?", (goal_id,)
                ).fetchone()
        return _lease_from_row(row) if row else None

    # checkpoints

    def set_checkpoint(self, checkpoint: GoalExecutionCheckpoint) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO goal_checkpoints(goal_id, payload) VALUES (?, ?)",
                    (checkpoint.goal_id, checkpoint.model_dump_json()),
                )

    def get_checkpoint(self, goal_id: str) -> Optional[GoalExecutionCheckpoint]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM goal_checkpoints WHERE goal_id = ?", (goal_id,)
            ).fetchone()
        return GoalExecutionCheckpoint.model_validate_json(row["payload"]) if row else None

    def clear_checkpoint(self, goal_id: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM goal_checkpoints WHERE goal_id = ?", (goal_id,))

    # idempotency

    def register_idempotency(self, record: GoalIdempotencyRecord, now: datetime) -> bool:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO goal_idempotency(key, goal_id, owner_id, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        goal_id = excluded.goal_id,
                        owner_id = excluded.owner_id,
                        created_at = excluded.created_at,
                        expires_at = excluded.expires_at
                    WHERE goal_idempotency.expires_at <= ?
                    """,
                    (
                        record.key,
                        record.goal_id,
                        record.owner_id,
                        _ts(record.created_at),
                        _ts(record.expires_at),
                        _ts(now),
                    ),
                )
        return cursor.rowcount > 0

    def get_idempotency(self, key: str) -> Optional[GoalIdempotencyRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM goal_idempotency WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return GoalIdempotencyRecord(
            key=row["key"],
            goal_id=row["goal_id"],
            owner_id=row["owner_id"],
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
        )

    def release_idempotency(self, key: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM goal_idempotency WHERE key = ?", (key,))

    # active goal pointer

    def get_active_goal_id(self) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM goal_runtime WHERE name = ?", (_ACTIVE_GOAL,)
            ).fetchone()
        return row["value"] if row else None

    def set_active_goal_id(self, goal_id: Optional[str]) -> None:
        with self._lock:
            with self._conn:
                if goal_id is None:
                    self._conn.execute("DELETE FROM goal_runtime WHERE name = ?", (_ACTIVE_GOAL,))
                else:
                    self._conn.execute(
                        "INSERT OR REPLACE INTO goal_runtime(name, value) VALUES (?, ?)",
                        (_ACTIVE_GOAL, goal_id),
                    )

    def release_goal(self, goal_id: str, owner_id: Optional[str] = None) -> bool:
        with self._lock:
            with self._conn:
                if owner_id is not None:
                    row = self._conn.execute(
                        "SELECT owner_id FROM goal_leases WHERE goal_id = ?", (goal_id,)
                    ).fetchone()
                    if row is not None and row["owner_id"] != owner_id:
                        return False
                self._conn.execute("DELETE FROM goal_leases WHERE goal_id = ?", (goal_id,))
                self._conn.execute("DELETE FROM goal_checkpoints WHERE goal_id = ?", (goal_id,))
                self._conn.execute(
                    "DELETE FROM goal_runtime WHERE name = ? AND value = ?",
                    (_ACTIVE_GOAL, goal_id),
                )
        return True

    # learning episodes

    def add_episode(self, episode: GoalLearningEpisode) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO goal_learning_episodes(episode_id, payload) VALUES (?, ?)",
                    (episode.id, episode.model_dump_json()),
                )

    def list_episodes(self, limit: int = 500) -> List[GoalLearningEpisode]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM goal_learning_episodes ORDER BY seq DESC LIMIT ?",
                (max(0, limit),),
            ).fetchall()
        return [GoalLearningEpisode.model_validate_json(row["payload"]) for row in rows]

    def clear_episodes(self) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM goal_learning_episodes")

    # lifecycle

    def reset(self) -> None:
        with self._lock:
            with self._conn:
                for table in _TABLES:
                    self._conn.execute(f"DELETE FROM {table}")
        logger.info("Goal store reset", extra={"path": str(self._path)})

    def close(self) -> None:
        with self._lock:
            self._conn.close()
