"""
PostgreSQL repository adapter — download sessions and per-key records.

Adapter layer — implements the DownloadRepository port using psycopg (v3)
with parameterized queries, one short transaction per call.

Table mapping:
  DownloadSession → download_sessions (inserted once, counters overwritten)
  DownloadRecord  → download_records  (append-only, one row per key)

Counters are written as absolute values, never incremented in SQL, so a
repeated write after a transient failure is harmless. Transient connection
failures (psycopg.OperationalError) are retried with tenacity.

No ORM — raw parameterized SQL.
"""

from __future__ import annotations

from typing import Any

import psycopg
import psycopg.errors
import structlog
from psycopg.rows import dict_row
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from nfce_retrieval.domain.failure import ErrorCode, SessionAlreadyExists, SessionNotFound
from nfce_retrieval.domain.models import (
    DownloadRecord,
    DownloadSession,
    RecordStatus,
    SessionStatus,
)
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS download_sessions (
    id              TEXT PRIMARY KEY,
    owner_id        TEXT,
    total_keys      INTEGER NOT NULL,
    processed_keys  INTEGER NOT NULL DEFAULT 0,
    success_count   INTEGER NOT NULL DEFAULT 0,
    failure_count   INTEGER NOT NULL DEFAULT 0,
    status          TEXT NOT NULL,
    started_at      TIMESTAMP WITH TIME ZONE NOT NULL,
    completed_at    TIMESTAMP WITH TIME ZONE
);

CREATE TABLE IF NOT EXISTS download_records (
    id              UUID PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES download_sessions(id) ON DELETE CASCADE,
    seq             BIGSERIAL,
    access_key      TEXT NOT NULL,
    status          TEXT NOT NULL,
    xml_location    TEXT,
    error_message   TEXT,
    downloaded_at   TIMESTAMP WITH TIME ZONE
);

CREATE INDEX IF NOT EXISTS download_records_session_idx
    ON download_records (session_id, seq);
"""

_INSERT_SESSION = """
INSERT INTO download_sessions (
    id, owner_id, total_keys, processed_keys, success_count, failure_count,
    status, started_at, completed_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_UPDATE_COUNTERS = """
UPDATE download_sessions SET
    processed_keys = %s,
    success_count = %s,
    failure_count = %s,
    status = %s,
    completed_at = %s
WHERE id = %s
"""

_INSERT_RECORD = """
INSERT INTO download_records (
    id, session_id, access_key, status, xml_location, error_message, downloaded_at
) VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_SESSION = "SELECT * FROM download_sessions WHERE id = %s"

_SELECT_RECORDS = "SELECT * FROM download_records WHERE session_id = %s ORDER BY seq"


_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(psycopg.OperationalError),
    reraise=True,
)


def _session_from_row(row: dict[str, Any]) -> DownloadSession:
    return DownloadSession(
        id=row["id"],
        owner_id=row["owner_id"],
        total_keys=row["total_keys"],
        processed_keys=row["processed_keys"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        status=SessionStatus(row["status"]),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _record_from_row(row: dict[str, Any]) -> DownloadRecord:
    return DownloadRecord(
        id=row["id"],
        session_id=row["session_id"],
        access_key=row["access_key"],
        status=RecordStatus(row["status"]),
        xml_location=row["xml_location"],
        error_message=row["error_message"],
        downloaded_at=row["downloaded_at"],
    )


class PsycopgDownloadRepository:
    """
    Persist session progress and per-key records to PostgreSQL.

    Implements the DownloadRepository port.
    All exceptions are caught at this adapter boundary via Result.from_computation().
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def ensure_schema(self) -> Result[bool]:
        """Create both tables if missing (idempotent)."""
        return Result.from_computation(
            self._create_schema,
            ErrorCode.DATABASE_ERROR,
            "Failed to create download schema",
        )

    def create_session(self, session: DownloadSession) -> Result[DownloadSession]:
        """Insert a new session; an id that was already used fails with SESSION_ALREADY_EXISTS."""
        return Result.from_computation(
            lambda: self._insert_session(session),
            ErrorCode.DATABASE_ERROR,
            "Failed to create download session",
        )

    def update_session_counters(self, session: DownloadSession) -> Result[DownloadSession]:
        return Result.from_computation(
            lambda: self._update_counters(session),
            ErrorCode.DATABASE_ERROR,
            "Failed to update session counters",
        )

    def append_download_record(self, record: DownloadRecord) -> Result[DownloadRecord]:
        return Result.from_computation(
            lambda: self._insert_record(record),
            ErrorCode.DATABASE_ERROR,
            "Failed to append download record",
        )

    def get_session(self, session_id: str) -> Result[DownloadSession]:
        return Result.from_computation(
            lambda: self._select_session(session_id),
            ErrorCode.DATABASE_ERROR,
            "Failed to load download session",
        )

    def list_records(self, session_id: str) -> Result[list[DownloadRecord]]:
        """Records of a session in the order they were appended."""
        return Result.from_computation(
            lambda: self._select_records(session_id),
            ErrorCode.DATABASE_ERROR,
            "Failed to list download records",
        )

    # ─────────────────────── SQL ───────────────────────

    @_transient
    def _create_schema(self) -> bool:
        with psycopg.connect(self._dsn) as conn:
            conn.execute(SCHEMA)
        log.info("repository.schema_ready")
        return True

    @_transient
    def _insert_session(self, session: DownloadSession) -> DownloadSession:
        try:
            with psycopg.connect(self._dsn) as conn, conn.transaction():
                conn.execute(
                    _INSERT_SESSION,
                    (
                        session.id,
                        session.owner_id,
                        session.total_keys,
                        session.processed_keys,
                        session.success_count,
                        session.failure_count,
                        session.status.value,
                        session.started_at,
                        session.completed_at,
                    ),
                )
        except psycopg.errors.UniqueViolation as e:
            raise SessionAlreadyExists(f"Download session {session.id!r} already exists") from e
        log.info("repository.session_created", session_id=session.id, total_keys=session.total_keys)
        return session

    @_transient
    def _update_counters(self, session: DownloadSession) -> DownloadSession:
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            cur = conn.execute(
                _UPDATE_COUNTERS,
                (
                    session.processed_keys,
                    session.success_count,
                    session.failure_count,
                    session.status.value,
                    session.completed_at,
                    session.id,
                ),
            )
            if cur.rowcount == 0:
                raise SessionNotFound(f"Download session {session.id!r} not found")
        return session

    @_transient
    def _insert_record(self, record: DownloadRecord) -> DownloadRecord:
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            conn.execute(
                _INSERT_RECORD,
                (
                    record.id,
                    record.session_id,
                    record.access_key,
                    record.status.value,
                    record.xml_location,
                    record.error_message,
                    record.downloaded_at,
                ),
            )
        return record

    @_transient
    def _select_session(self, session_id: str) -> DownloadSession:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            row = conn.execute(_SELECT_SESSION, (session_id,)).fetchone()
        if row is None:
            raise SessionNotFound(f"Download session {session_id!r} not found")
        return _session_from_row(row)

    @_transient
    def _select_records(self, session_id: str) -> list[DownloadRecord]:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            rows = conn.execute(_SELECT_RECORDS, (session_id,)).fetchall()
        return [_record_from_row(row) for row in rows]
