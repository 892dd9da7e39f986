"""Append-only, hash-chained execution log backed by SQLite.

The log is the persisted execution history. Entries are keyed by
pipeline id and execution id and chained per pipeline: each entry
includes the SHA-256 of the previous entry of the same pipeline.

- Append-only: only ``append()`` writes; no update, no delete.
- WAL journal mode for concurrent readers.
- entry_hash UNIQUE constraint for tamper detection.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from deployline.core.hasher import compute_entry_hash
from deployline.models.execution import Execution
from deployline.models.log import EntryScope, LogEntry
from deployline.models.stages import StageOutcome


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LOG = """
CREATE TABLE IF NOT EXISTS execution_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    pipeline_id         TEXT NOT NULL,
    execution_id        TEXT NOT NULL,
    scope               TEXT NOT NULL,
    subject             TEXT NOT NULL DEFAULT '',
    transition          TEXT NOT NULL DEFAULT '',
    timestamp_utc       TEXT NOT NULL,
    details_json        TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_PIPELINE = """
CREATE INDEX IF NOT EXISTS idx_pipeline ON execution_log(pipeline_id, id);
"""

_CREATE_IDX_EXECUTION = """
CREATE INDEX IF NOT EXISTS idx_execution ON execution_log(execution_id, id);
"""

_COLUMNS = (
    "entry_id, pipeline_id, execution_id, scope, subject, transition, "
    "timestamp_utc, details_json, previous_entry_hash, entry_hash"
)


class LogIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class ExecutionLog:
    """Append-only, hash-chained execution history.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LOG)
            conn.execute(_CREATE_IDX_PIPELINE)
            conn.execute(_CREATE_IDX_EXECUTION)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LogEntry) -> LogEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        This is the ONLY write method.
        """
        with self._write_lock:
            previous_hash = self._latest_hash(entry.pipeline_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            entry_hash = compute_entry_hash(entry_dict)

            sealed = entry.model_copy(
                update={"previous_entry_hash": previous_hash, "entry_hash": entry_hash}
            )
            self._insert(sealed)
        return sealed

    def record_execution(
        self,
        execution: Execution,
        transition: str,
    ) -> LogEntry:
        """Append an execution-scope entry carrying the full snapshot."""
        return self.append(
            LogEntry(
                pipeline_id=execution.pipeline_id,
                execution_id=execution.execution_id,
                scope=EntryScope.EXECUTION,
                transition=transition,
                details={"execution": execution.model_dump(mode="json")},
            )
        )

    def _insert(self, entry: LogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO execution_log ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.pipeline_id,
                    entry.execution_id,
                    entry.scope.value,
                    entry.subject,
                    entry.transition,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    json.dumps(entry.details),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _latest_hash(self, pipeline_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM execution_log WHERE pipeline_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (pipeline_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def entries(self, execution_id: str) -> list[LogEntry]:
        """Return all entries of one execution, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM execution_log WHERE execution_id = ? ORDER BY id ASC",
                (execution_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def pipeline_entries(self, pipeline_id: str) -> list[LogEntry]:
        """Return all entries of one pipeline, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM execution_log WHERE pipeline_id = ? ORDER BY id ASC",
                (pipeline_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def execution_ids(self, pipeline_id: str) -> list[str]:
        """Execution ids of a pipeline in the order they were created."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT execution_id, MIN(id) AS first FROM execution_log "
                "WHERE pipeline_id = ? GROUP BY execution_id ORDER BY first ASC",
                (pipeline_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def pipeline_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT pipeline_id, MIN(id) AS first FROM execution_log "
                "GROUP BY pipeline_id ORDER BY first ASC"
            ).fetchall()
        return [row[0] for row in rows]

    def load_execution(self, execution_id: str) -> Execution | None:
        """Rebuild the latest execution snapshot from the log.

        Starts from the newest execution-scope snapshot and replays any
        stage entries recorded after it.
        """
        entries = self.entries(execution_id)
        for index in range(len(entries) - 1, -1, -1):
            entry = entries[index]
            if entry.scope == EntryScope.EXECUTION and "execution" in entry.details:
                execution = Execution.model_validate(entry.details["execution"])
                break
        else:
            return None

        outcomes = {outcome.stage_name: outcome for outcome in execution.stages}
        for entry in entries[index + 1:]:
            if entry.scope == EntryScope.STAGE and "outcome" in entry.details:
                outcomes[entry.subject] = StageOutcome.model_validate(
                    entry.details["outcome"]
                )
        return execution.model_copy(
            update={"stages": [outcomes[o.stage_name] for o in execution.stages]}
        )

    def history(self, pipeline_id: str) -> list[Execution]:
        """Latest snapshot of every execution of a pipeline, oldest first."""
        executions: list[Execution] = []
        for execution_id in self.execution_ids(pipeline_id):
            execution = self.load_execution(execution_id)
            if execution is not None:
                executions.append(execution)
        return executions

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, pipeline_id: str) -> bool:
        """Verify the hash chain of one pipeline.

        Returns True if the chain is valid, raises LogIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.pipeline_entries(pipeline_id):
            if entry.previous_entry_hash != prev_hash:
                raise LogIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LogIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LogEntry:
        (
            entry_id,
            pipeline_id,
            execution_id,
            scope,
            subject,
            transition,
            timestamp_utc,
            details_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LogEntry(
            entry_id=entry_id,
            pipeline_id=pipeline_id,
            execution_id=execution_id,
            scope=EntryScope(scope),
            subject=subject,
            transition=transition,
            timestamp_utc=timestamp_utc,
            details=json.loads(details_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
