"""Content-addressed artifact store for hand-offs between stages.

Blob layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
Index: {base_path}/index.db, (execution_id, stage_name, name) -> ArtifactRef.

Keys are scoped per execution, so two executions never see each other's
artifacts. An execution's keys are evicted when it completes unless the
execution was retained for audit. The index and the retention marks live
in SQLite, so retained artifacts stay reachable after a restart.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from deployline.core.hasher import canonical_json_bytes, sha256_hex
from deployline.models.artifacts import ArtifactRef

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_INDEX = """
CREATE TABLE IF NOT EXISTS artifact_index (
    execution_id    TEXT NOT NULL,
    stage_name      TEXT NOT NULL,
    name            TEXT NOT NULL,
    action_name     TEXT NOT NULL DEFAULT '',
    content_address TEXT NOT NULL,
    size_bytes      INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    was_read        INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (execution_id, stage_name, name)
);
"""

_CREATE_IDX_ADDRESS = """
CREATE INDEX IF NOT EXISTS idx_content_address ON artifact_index(content_address);
"""

_CREATE_RETAINED = """
CREATE TABLE IF NOT EXISTS retained_execution (
    execution_id TEXT PRIMARY KEY
);
"""

_COLUMNS = (
    "execution_id, stage_name, name, action_name, content_address, "
    "size_bytes, created_at"
)

INDEX_FILENAME = "index.db"


class ArtifactNotFoundError(KeyError):
    """Raised when a ref was never produced or has been evicted."""


class ArtifactIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


def encode_manifest(obj: Any) -> bytes:
    """Serialize a structured manifest (image definitions, output maps)."""
    return canonical_json_bytes(obj)


def decode_manifest(blob: bytes) -> Any:
    return json.loads(blob.decode("utf-8"))


class ArtifactStore:
    """Execution-scoped artifact index over a content-addressed blob store.

    ``put`` is idempotent per ``(execution, stage, name)``: a second put
    overwrites. Overwriting a key that a consumer has already read is a
    producer bug; it is logged and counted, and the last write wins.

    Parameters
    ----------
    base_path:
        Root directory for blob storage and the index database.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._db_path = self._base / INDEX_FILENAME
        self._lock = threading.Lock()
        self.overwrites_after_read: int = 0
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_INDEX)
            conn.execute(_CREATE_IDX_ADDRESS)
            conn.execute(_CREATE_RETAINED)
            conn.commit()

    @staticmethod
    def _extract_digest(content_address: str) -> str:
        return content_address.removeprefix("sha256:")

    def _blob_path(self, digest: str) -> Path:
        return self._base / digest[:2] / digest[2:4] / f"{digest}.dat"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put(
        self,
        execution_id: str,
        stage_name: str,
        name: str,
        blob: bytes,
        *,
        action_name: str = "",
    ) -> ArtifactRef:
        """Store *blob* under ``(execution_id, stage_name, name)``."""
        digest = sha256_hex(blob)
        path = self._blob_path(digest)
        ref = ArtifactRef(
            execution_id=execution_id,
            stage_name=stage_name,
            action_name=action_name,
            name=name,
            content_address=f"sha256:{digest}",
            size_bytes=len(blob),
        )

        with self._lock:
            if path.exists():
                if sha256_hex(path.read_bytes()) != digest:
                    raise ArtifactIntegrityError(
                        f"Existing blob at {digest} failed integrity check"
                    )
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(blob)

            with self._connect() as conn:
                row = conn.execute(
                    "SELECT was_read FROM artifact_index "
                    "WHERE execution_id = ? AND stage_name = ? AND name = ?",
                    ref.key,
                ).fetchone()
                if row is not None and row[0]:
                    self.overwrites_after_read += 1
                    logger.warning(
                        "Artifact %s/%s in execution %s overwritten after it was read "
                        "(producer %r); continuing with the last write.",
                        stage_name,
                        name,
                        execution_id,
                        action_name,
                    )
                conn.execute(
                    f"INSERT OR REPLACE INTO artifact_index ({_COLUMNS}, was_read) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, 0)",
                    (
                        ref.execution_id,
                        ref.stage_name,
                        ref.name,
                        ref.action_name,
                        ref.content_address,
                        ref.size_bytes,
                        ref.created_at.isoformat(),
                    ),
                )
                conn.commit()
        logger.debug("Stored artifact %s (%d bytes) as %s", name, len(blob), digest[:12])
        return ref

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, ref: ArtifactRef) -> bytes:
        """Return the bytes behind *ref*.

        Raises ``ArtifactNotFoundError`` if the ref is unknown or evicted.
        """
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT content_address FROM artifact_index "
                    "WHERE execution_id = ? AND stage_name = ? AND name = ?",
                    ref.key,
                ).fetchone()
                if row is None:
                    raise ArtifactNotFoundError(
                        f"Artifact {ref.name!r} from stage {ref.stage_name!r} "
                        f"(execution {ref.execution_id}) was never produced or was evicted"
                    )
                conn.execute(
                    "UPDATE artifact_index SET was_read = 1 "
                    "WHERE execution_id = ? AND stage_name = ? AND name = ?",
                    ref.key,
                )
                conn.commit()
        content_address = row[0]
        path = self._blob_path(self._extract_digest(content_address))
        if not path.exists():
            raise ArtifactNotFoundError(f"Blob missing for {content_address}")
        return path.read_bytes()

    def find(self, execution_id: str, name: str) -> ArtifactRef | None:
        """Look up an artifact in one execution by its logical name."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM artifact_index "
                "WHERE execution_id = ? AND name = ? ORDER BY rowid ASC LIMIT 1",
                (execution_id, name),
            ).fetchone()
        return self._row_to_ref(row) if row else None

    def list_refs(self, execution_id: str) -> list[ArtifactRef]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM artifact_index "
                "WHERE execution_id = ? ORDER BY rowid ASC",
                (execution_id,),
            ).fetchall()
        return [self._row_to_ref(row) for row in rows]

    def exists(self, content_address: str) -> bool:
        return self._blob_path(self._extract_digest(content_address)).exists()

    def verify(self, content_address: str) -> bool:
        """Re-hash a stored blob and compare against its address."""
        digest = self._extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def retain(self, execution_id: str) -> None:
        """Keep an execution's artifacts after it completes."""
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO retained_execution (execution_id) VALUES (?)",
                (execution_id,),
            )
            conn.commit()

    def is_retained(self, execution_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM retained_execution WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
        return row is not None

    def evict(self, execution_id: str) -> int:
        """Drop an execution's artifacts unless retained.

        Blobs still referenced by another execution are kept. Returns the
        number of index entries removed.
        """
        if self.is_retained(execution_id):
            return 0
        with self._lock, self._connect() as conn:
            addresses = [
                row[0]
                for row in conn.execute(
                    "SELECT content_address FROM artifact_index WHERE execution_id = ?",
                    (execution_id,),
                ).fetchall()
            ]
            conn.execute(
                "DELETE FROM artifact_index WHERE execution_id = ?", (execution_id,)
            )
            conn.commit()
            for address in set(addresses):
                still_used = conn.execute(
                    "SELECT 1 FROM artifact_index WHERE content_address = ? LIMIT 1",
                    (address,),
                ).fetchone()
                if still_used is None:
                    self._blob_path(self._extract_digest(address)).unlink(missing_ok=True)
        if addresses:
            logger.debug("Evicted %d artifacts of execution %s", len(addresses), execution_id)
        return len(addresses)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_ref(row: tuple) -> ArtifactRef:
        (
            execution_id,
            stage_name,
            name,
            action_name,
            content_address,
            size_bytes,
            created_at,
        ) = row
        return ArtifactRef(
            execution_id=execution_id,
            stage_name=stage_name,
            name=name,
            action_name=action_name,
            content_address=content_address,
            size_bytes=size_bytes,
            created_at=datetime.fromisoformat(created_at),
        )
