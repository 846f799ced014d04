from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS features (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'planning',
    current_agent TEXT,
    revision_count INTEGER NOT NULL DEFAULT 0,
    needs_attention INTEGER NOT NULL DEFAULT 0,
    attention_type TEXT,
    approved_by TEXT,
    approved_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    runner_active INTEGER NOT NULL DEFAULT 0,
    runner_claimed_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS pipeline_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id TEXT NOT NULL REFERENCES features(id),
    timestamp TEXT NOT NULL,
    agent TEXT NOT NULL,
    stage TEXT NOT NULL,
    verdict TEXT NOT NULL,
    issues TEXT,
    revision_loop INTEGER,
    notes TEXT
);

CREATE TRIGGER IF NOT EXISTS pipeline_log_no_update
BEFORE UPDATE ON pipeline_log
BEGIN
    SELECT RAISE(ABORT, 'pipeline_log is append-only');
END;

CREATE TRIGGER IF NOT EXISTS pipeline_log_no_delete
BEFORE DELETE ON pipeline_log
BEGIN
    SELECT RAISE(ABORT, 'pipeline_log is append-only');
END;

CREATE TABLE IF NOT EXISTS activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id TEXT NOT NULL REFERENCES features(id),
    agent_id TEXT NOT NULL,
    step_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS handoff_packets (
    id TEXT PRIMARY KEY,
    feature_id TEXT NOT NULL REFERENCES features(id),
    phase TEXT NOT NULL,
    version INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress',
    agent_id TEXT,
    agent_type TEXT,
    started_at TEXT,
    completed_at TEXT,
    duration_ms INTEGER,
    output_summary TEXT,
    output_artifacts TEXT NOT NULL DEFAULT '[]',
    output_decisions TEXT NOT NULL DEFAULT '[]',
    previous_version_id TEXT REFERENCES handoff_packets(id),
    diff_from_previous TEXT,
    rejection_reason TEXT,
    UNIQUE (feature_id, phase, version)
);

CREATE UNIQUE INDEX IF NOT EXISTS handoff_packets_one_in_progress
ON handoff_packets (feature_id, phase)
WHERE status = 'in_progress';
"""


class ConflictError(Exception):
    """Raised when a concurrent writer already holds what was requested.

    Covers a second in-progress packet for the same (feature, phase), a
    second runner for the same feature and lost compare-and-set updates.
    Retry once the other operation has resolved.
    """

    def __init__(self, message: str, feature_id: str = "", phase: str | None = None) -> None:
        self.feature_id = feature_id
        self.phase = phase
        super().__init__(message)


class FeatureNotFound(LookupError):
    def __init__(self, feature_id: str) -> None:
        self.feature_id = feature_id
        super().__init__(f"Feature not found: {feature_id}")


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_db_ts(ts: datetime) -> str:
    """Fixed-width UTC ISO string, so text order equals time order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


class StateDB:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> StateDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ── Features ─────────────────────────────────────────────────────

    def insert_feature(self, feature_id: str, title: str, **kwargs: Any) -> None:
        now = to_db_ts(utc_now())
        fields: dict[str, Any] = {
            "id": feature_id,
            "title": title,
            "created_at": now,
            "updated_at": now,
            **kwargs,
        }
        cols = ", ".join(fields)
        placeholders = ", ".join(["?"] * len(fields))
        with self._lock, self._conn:
            try:
                self._conn.execute(
                    f"INSERT INTO features ({cols}) VALUES ({placeholders})",
                    list(fields.values()),
                )
            except sqlite3.IntegrityError as exc:
                msg = f"Feature {feature_id} already exists"
                raise ConflictError(msg, feature_id=feature_id) from exc

    def get_feature(self, feature_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM features WHERE id=?", (feature_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_features(self, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM features ORDER BY created_at, id"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM features WHERE status=? ORDER BY created_at, id",
                    (status,),
                ).fetchall()
        return [dict(r) for r in rows]

    def update_feature(
        self, feature_id: str, expected_status: str | None = None, **kwargs: Any
    ) -> bool:
        """Update columns; with *expected_status* only if the status still matches.

        Returns False when no row was updated.
        """
        if not kwargs:
            return self.get_feature(feature_id) is not None
        kwargs["updated_at"] = to_db_ts(utc_now())
        set_clause = ", ".join(f"{k}=?" for k in kwargs)
        sql = f"UPDATE features SET {set_clause} WHERE id=?"
        params: list[Any] = [*kwargs.values(), feature_id]
        if expected_status is not None:
            sql += " AND status=?"
            params.append(expected_status)
        with self._lock, self._conn:
            cur = self._conn.execute(sql, params)
        return cur.rowcount == 1

    def claim_runner(
        self,
        feature_id: str,
        now: datetime | None = None,
        lease_seconds: float | None = None,
    ) -> bool:
        """Set the runner flag if nobody holds it. Returns False if taken.

        With *lease_seconds*, a claim last stamped longer ago than that is
        treated as abandoned and taken over.
        """
        now = now or utc_now()
        sql = (
            "UPDATE features SET runner_active=1, runner_claimed_at=? "
            "WHERE id=? AND (runner_active=0"
        )
        params: list[Any] = [to_db_ts(now), feature_id]
        if lease_seconds is not None:
            sql += " OR runner_claimed_at IS NULL OR runner_claimed_at<?"
            params.append(to_db_ts(now - timedelta(seconds=lease_seconds)))
        with self._lock, self._conn:
            cur = self._conn.execute(sql + ")", params)
        return cur.rowcount == 1

    def refresh_runner(self, feature_id: str, now: datetime | None = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE features SET runner_claimed_at=? WHERE id=? AND runner_active=1",
                (to_db_ts(now or utc_now()), feature_id),
            )

    def release_runner(self, feature_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE features SET runner_active=0, runner_claimed_at=NULL WHERE id=?",
                (feature_id,),
            )

    # ── Pipeline log ─────────────────────────────────────────────────

    def _insert_log(
        self, feature_id: str, entry: dict[str, Any], increment_revision: bool
    ) -> int:
        last = self._conn.execute(
            "SELECT timestamp FROM pipeline_log WHERE feature_id=? "
            "ORDER BY seq DESC LIMIT 1",
            (feature_id,),
        ).fetchone()
        if last is not None and entry["timestamp"] <= last["timestamp"]:
            msg = (
                f"Log timestamp {entry['timestamp']} is not after "
                f"{last['timestamp']} for feature {feature_id}"
            )
            raise ValueError(msg)
        cur = self._conn.execute(
            "INSERT INTO pipeline_log (feature_id, timestamp, agent, stage, "
            "verdict, issues, revision_loop, notes) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                feature_id,
                entry["timestamp"],
                entry["agent"],
                entry["stage"],
                entry["verdict"],
                entry.get("issues"),
                entry.get("revision_loop"),
                entry.get("notes"),
            ),
        )
        bump = ", revision_count=revision_count+1" if increment_revision else ""
        self._conn.execute(
            f"UPDATE features SET updated_at=?{bump} WHERE id=?",
            (to_db_ts(utc_now()), feature_id),
        )
        return cur.lastrowid  # type: ignore[return-value]

    def append_log_entry(
        self,
        feature_id: str,
        entry: dict[str, Any],
        increment_revision: bool = False,
    ) -> int:
        """Append one entry. Its timestamp must be later than the last one."""
        with self._lock, self._conn:
            if self._conn.execute(
                "SELECT 1 FROM features WHERE id=?", (feature_id,)
            ).fetchone() is None:
                raise FeatureNotFound(feature_id)
            return self._insert_log(feature_id, entry, increment_revision)

    def append_log_and_update(
        self,
        feature_id: str,
        entry: dict[str, Any],
        expected_status: str,
        increment_revision: bool = False,
        **kwargs: Any,
    ) -> bool:
        """Update the feature and append *entry* in one transaction.

        Nothing is written unless the status still equals *expected_status*.
        Returns False in that case.
        """
        kwargs["updated_at"] = to_db_ts(utc_now())
        set_clause = ", ".join(f"{k}=?" for k in kwargs)
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"UPDATE features SET {set_clause} WHERE id=? AND status=?",
                [*kwargs.values(), feature_id, expected_status],
            )
            if cur.rowcount != 1:
                return False
            self._insert_log(feature_id, entry, increment_revision)
        return True

    def get_log(self, feature_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pipeline_log WHERE feature_id=? ORDER BY seq",
                (feature_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def last_log_timestamp(self, feature_id: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT timestamp FROM pipeline_log WHERE feature_id=? "
                "ORDER BY seq DESC LIMIT 1",
                (feature_id,),
            ).fetchone()
        return row["timestamp"] if row else None

    # ── Activity feed ────────────────────────────────────────────────

    def insert_activity(
        self,
        feature_id: str,
        agent_id: str,
        step_id: str,
        event_type: str,
        content: str,
    ) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO activity (feature_id, agent_id, step_id, event_type, "
                "content, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (feature_id, agent_id, step_id, event_type, content, to_db_ts(utc_now())),
            )
        return cur.lastrowid  # type: ignore[return-value]

    def get_activity(self, feature_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM activity WHERE feature_id=? ORDER BY id",
                (feature_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Handoff packets ──────────────────────────────────────────────

    def insert_packet_version(
        self,
        packet_id: str,
        feature_id: str,
        phase: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Insert the next version for (feature_id, phase).

        The in-progress check, version numbering and insert run in one
        transaction; the unique indexes catch writers on other connections.
        """
        with self._lock, self._conn:
            busy = self._conn.execute(
                "SELECT id FROM handoff_packets "
                "WHERE feature_id=? AND phase=? AND status='in_progress'",
                (feature_id, phase),
            ).fetchone()
            if busy is not None:
                msg = (
                    f"Packet {busy['id']} is already in progress for "
                    f"{feature_id}/{phase}"
                )
                raise ConflictError(msg, feature_id=feature_id, phase=phase)

            prev = self._conn.execute(
                "SELECT id, version FROM handoff_packets WHERE feature_id=? AND phase=? "
                "ORDER BY version DESC LIMIT 1",
                (feature_id, phase),
            ).fetchone()
            fields: dict[str, Any] = {
                "id": packet_id,
                "feature_id": feature_id,
                "phase": phase,
                "version": prev["version"] + 1 if prev else 1,
                "previous_version_id": prev["id"] if prev else None,
                "status": "in_progress",
                **kwargs,
            }
            cols = ", ".join(fields)
            placeholders = ", ".join(["?"] * len(fields))
            try:
                self._conn.execute(
                    f"INSERT INTO handoff_packets ({cols}) VALUES ({placeholders})",
                    list(fields.values()),
                )
            except sqlite3.IntegrityError as exc:
                msg = f"Concurrent version created for {feature_id}/{phase}"
                raise ConflictError(msg, feature_id=feature_id, phase=phase) from exc
            row = self._conn.execute(
                "SELECT * FROM handoff_packets WHERE id=?", (packet_id,)
            ).fetchone()
        return dict(row)

    def get_packet(self, packet_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM handoff_packets WHERE id=?", (packet_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_packets(
        self, feature_id: str, phase: str | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            if phase is None:
                rows = self._conn.execute(
                    "SELECT * FROM handoff_packets WHERE feature_id=? "
                    "ORDER BY phase, version",
                    (feature_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM handoff_packets WHERE feature_id=? AND phase=? "
                    "ORDER BY version",
                    (feature_id, phase),
                ).fetchall()
        return [dict(r) for r in rows]

    def update_in_progress_packet(self, packet_id: str, **kwargs: Any) -> bool:
        """Update a packet only while it is in progress. Returns False otherwise."""
        if not kwargs:
            return False
        set_clause = ", ".join(f"{k}=?" for k in kwargs)
        sql = (
            f"UPDATE handoff_packets SET {set_clause} "
            "WHERE id=? AND status='in_progress'"
        )
        with self._lock, self._conn:
            cur = self._conn.execute(sql, [*kwargs.values(), packet_id])
        return cur.rowcount == 1
