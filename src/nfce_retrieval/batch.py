"""
Batch session processor — runs the hybrid retrieval over a list of keys
with durable, per-key progress.

Domain layer — persistence and blob storage are injected ports.

Per session:
  1. Create the session record (total_keys known, processed_keys = 0)
  2. Preconditions: credential present and unexpired, sources readable,
     certificate decryptable. Any failure → session `failed`, zero records,
     Failure returned to the caller.
  3. Keys strictly in input order: retrieve → store XML → append record →
     write counters. One key's failure never stops the loop.
  4. `completed` when every key was accounted for, else `failed`.

Counters are written as absolute values after every key, so the persisted
snapshot always matches the appended records even if the process dies
between keys.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TypeAlias

import structlog

from nfce_retrieval.domain.credential import require_valid_credential
from nfce_retrieval.domain.failure import ErrorCode, FailureDescription
from nfce_retrieval.domain.keys import extract_access_keys, parse_access_key
from nfce_retrieval.domain.models import (
    DigitalCertificateMaterial,
    DocumentKey,
    DownloadRecord,
    DownloadSession,
    PortalSearchItem,
    RecordStatus,
    RetrievalResult,
    SessionStatus,
)
from nfce_retrieval.domain.ports import (
    BlobStore,
    CertificateTransformer,
    DownloadRepository,
)
from nfce_retrieval.domain.result import Result
from nfce_retrieval.retrieval import HybridRetriever

log = structlog.get_logger()

RetrieveFn: TypeAlias = Callable[[DocumentKey], RetrievalResult]


def xml_blob_path(owner_id: str | None, session_id: str, access_key: str) -> str:
    return f"downloads/{owner_id or 'anonymous'}/{session_id}/{access_key}.xml"


def _record_status(result: RetrievalResult) -> RecordStatus:
    if result.success:
        return RecordStatus.SUCCESS
    if result.error_code is ErrorCode.DOCUMENT_NOT_FOUND:
        return RecordStatus.NOT_FOUND
    return RecordStatus.FAILED


class BatchSessionProcessor:
    """Drive one download session at a time; sessions share no state."""

    def __init__(
        self,
        retriever: HybridRetriever,
        repository: DownloadRepository,
        blob_store: BlobStore,
        transformer: CertificateTransformer,
    ) -> None:
        self._retriever = retriever
        self._repository = repository
        self._blob_store = blob_store
        self._transformer = transformer

    # ─────────────────────── Entry points ───────────────────────

    def process_keys(
        self,
        session_id: str,
        keys: Sequence[str],
        material: DigitalCertificateMaterial,
        bearer_token: str,
        owner_id: str | None = None,
    ) -> Result[DownloadSession]:
        """Hybrid retrieval (SOAP + Portal) for every key, in order."""

        def retrieve(key: DocumentKey) -> RetrievalResult:
            return self._retriever.retrieve(key, material, bearer_token)

        return self._run(session_id, owner_id, bearer_token, [(k, retrieve) for k in keys])

    def process_known_protocols(
        self,
        session_id: str,
        items: Sequence[PortalSearchItem],
        bearer_token: str,
        owner_id: str | None = None,
    ) -> Result[DownloadSession]:
        """Portal-only retrieval for listing items that already carry their protocol."""
        entries: list[tuple[str, RetrieveFn]] = []
        for item in items:
            protocol_number = item.protocol_number

            def retrieve(key: DocumentKey, protocol_number: str = protocol_number) -> RetrievalResult:
                return self._retriever.retrieve_with_protocol(key, protocol_number, bearer_token)

            entries.append((item.access_key, retrieve))
        return self._run(session_id, owner_id, bearer_token, entries)

    def process_uploaded_list(
        self,
        session_id: str,
        keys_locator: str,
        certificate_locator: str,
        certificate_password: str,
        bearer_token: str,
        owner_id: str | None = None,
    ) -> Result[DownloadSession]:
        """
        Read the uploaded key list and certificate from the blob store, then
        process the keys. Unreadable sources or an undecryptable certificate
        fail the whole session before any key is attempted.
        """
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            keys = self._blob_store.read_blob(keys_locator).map(
                lambda data: extract_access_keys(data.decode("utf-8-sig", errors="replace"))
            )
            if keys.is_failure():
                return self.abort_session(session_id, owner_id, keys.error(), ErrorCode.SOURCE_UNAVAILABLE)

            material = (
                self._blob_store.read_blob(certificate_locator)
                .map_failure(
                    lambda err: FailureDescription(ErrorCode.SOURCE_UNAVAILABLE, err.message, err.exception)
                )
                .flat_map(lambda container: self._transformer.transform(container, certificate_password))
            )
            if material.is_failure():
                return self.abort_session(session_id, owner_id, material.error())

            return self.process_keys(session_id, keys.value(), material.value(), bearer_token, owner_id)

    # ─────────────────────── Session loop ───────────────────────

    def _run(
        self,
        session_id: str,
        owner_id: str | None,
        bearer_token: str,
        entries: Sequence[tuple[str, RetrieveFn]],
    ) -> Result[DownloadSession]:
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            created = self._repository.create_session(
                DownloadSession(id=session_id, total_keys=len(entries), owner_id=owner_id)
            )
            if created.is_failure():
                log.error("batch.session_create_failed", error=created.error().message)
                return created
            session = created.value()

            credential = require_valid_credential(bearer_token)
            if credential.is_failure():
                log.error("batch.precondition_failed", error=credential.error().message)
                self._save(session.finish(SessionStatus.FAILED))
                return Result.failure_from(credential.error())

            log.info("batch.session_started", total_keys=session.total_keys)

            counters_saved = True
            for position, (raw_key, retrieve) in enumerate(entries, start=1):
                record = self._process_key(session, raw_key, retrieve)
                if record is None:
                    continue
                session = session.record_outcome(record.status is RecordStatus.SUCCESS)
                counters_saved = self._save(session).is_success() and counters_saved
                log.info(
                    "batch.key_processed",
                    position=position,
                    access_key=record.access_key,
                    status=record.status.value,
                    processed=session.processed_keys,
                    total=session.total_keys,
                )

            completed = session.is_complete and counters_saved
            session = session.finish(SessionStatus.COMPLETED if completed else SessionStatus.FAILED)
            saved = self._save(session)
            if saved.is_failure():
                return Result.failure_from(saved.error())
            log.info(
                "batch.session_finished",
                status=session.status.value,
                processed=session.processed_keys,
                success=session.success_count,
                failures=session.failure_count,
            )
            return Result.success(session)

    def _process_key(
        self,
        session: DownloadSession,
        raw_key: str,
        retrieve: RetrieveFn,
    ) -> DownloadRecord | None:
        """
        Retrieve one key and append its record.

        Returns None when the record could not be persisted; the key is then
        left uncounted so counters never run ahead of records.
        """
        parsed = parse_access_key(raw_key)
        if parsed.is_failure():
            result = RetrievalResult(
                success=False,
                error_message=parsed.error().message,
                error_code=ErrorCode.INVALID_ACCESS_KEY,
            )
            access_key = raw_key.strip()
        else:
            key = parsed.value()
            access_key = key.value
            result = Result.from_computation(
                lambda: retrieve(key),
                ErrorCode.UNKNOWN_ERROR,
                "Unexpected retrieval failure",
            ).either(
                lambda retrieved: retrieved,
                lambda err: RetrievalResult(success=False, error_message=err.message, error_code=err.code),
            )

        record = self._build_record(session, access_key, result)
        appended = self._repository.append_download_record(record)
        if appended.is_failure():
            log.error("batch.record_append_failed", access_key=access_key, error=appended.error().message)
            return None
        return appended.value()

    def _build_record(
        self,
        session: DownloadSession,
        access_key: str,
        result: RetrievalResult,
    ) -> DownloadRecord:
        if not result.success or result.xml_content is None:
            message = result.error_message or "XML not found"
            if result.status_code and "Status:" not in message:
                message = f"{message} (Status: {result.status_code})"
            return DownloadRecord(
                session_id=session.id,
                access_key=access_key,
                status=_record_status(result) if not result.success else RecordStatus.FAILED,
                error_message=message,
            )

        stored = self._blob_store.persist_blob(
            xml_blob_path(session.owner_id, session.id, access_key),
            result.xml_content.encode("utf-8"),
        )
        if stored.is_failure():
            return DownloadRecord(
                session_id=session.id,
                access_key=access_key,
                status=RecordStatus.FAILED,
                error_message=f"Failed to store XML: {stored.error().message}",
            )

        return DownloadRecord(
            session_id=session.id,
            access_key=access_key,
            status=RecordStatus.SUCCESS,
            xml_location=stored.value(),
            downloaded_at=datetime.now(UTC),
        )

    # ─────────────────────── Helpers ───────────────────────

    def _save(self, session: DownloadSession) -> Result[DownloadSession]:
        saved = self._repository.update_session_counters(session)
        if saved.is_failure():
            log.error("batch.session_update_failed", error=saved.error().message)
        return saved

    def abort_session(
        self,
        session_id: str,
        owner_id: str | None,
        error: FailureDescription,
        code: ErrorCode | None = None,
    ) -> Result[DownloadSession]:
        """Record a failed, empty session for a precondition that failed before the key list was known."""
        log.error("batch.precondition_failed", error=error.message, code=(code or error.code).value)
        created = self._repository.create_session(
            DownloadSession(id=session_id, total_keys=0, owner_id=owner_id)
        )
        if created.is_success():
            self._save(created.value().finish(SessionStatus.FAILED))
        return Result.failure(code or error.code, error.message, error.exception)
