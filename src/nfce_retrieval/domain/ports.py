"""
Ports — Protocol-based interfaces for infrastructure adapters.

Domain ← Ports (protocols) ← Adapters (implementations)

Upstream systems:
  CertificateTransformer → PKCS#12 container → PEM material
  AuthorityGateway       → SOAP consultation (protocol number, embedded XML)
  PortalGateway          → Portal REST (document XML, period listing)

Collaborators implemented outside the engine's core:
  BlobStore              → persist / read opaque blobs (XML, key lists, certificates)
  DownloadRepository     → session counters and per-key records
"""

from __future__ import annotations

from datetime import date
from typing import Protocol, runtime_checkable

from nfce_retrieval.domain.models import (
    DigitalCertificateMaterial,
    DocumentKey,
    DownloadRecord,
    DownloadSession,
    Environment,
    PortalFetchResult,
    PortalSearchResult,
    SoapResult,
)
from nfce_retrieval.domain.result import Result


@runtime_checkable
class CertificateTransformer(Protocol):
    """Port: decrypt a PKCS#12 container into PEM certificate, key and chain."""

    def transform(self, container: bytes, password: str) -> Result[DigitalCertificateMaterial]: ...


@runtime_checkable
class AuthorityGateway(Protocol):
    """
    Port: consult the authority's protocol web service over mutual TLS.

    A response without protocol number is still a Success — deciding what to
    do about it belongs to the orchestrator.
    """

    def consult(
        self,
        key: DocumentKey,
        material: DigitalCertificateMaterial,
        environment: Environment | None = None,
    ) -> Result[SoapResult]: ...


@runtime_checkable
class PortalGateway(Protocol):
    """Port: the Portal REST API (token-authenticated)."""

    def fetch_document_xml(
        self,
        protocol_number: str,
        key: DocumentKey,
        bearer_token: str,
    ) -> Result[PortalFetchResult]: ...

    def search_by_period(
        self,
        start_date: date,
        end_date: date,
        taxpayer_id: str,
        bearer_token: str,
        page_size: int,
        page: int = 1,
        start_time: str = "00:00",
        end_time: str = "23:59",
    ) -> Result[PortalSearchResult]: ...


@runtime_checkable
class BlobStore(Protocol):
    """Port: opaque blob storage. Locators are whatever the store returns."""

    def persist_blob(self, path: str, data: bytes) -> Result[str]: ...

    def read_blob(self, locator: str) -> Result[bytes]: ...


@runtime_checkable
class DownloadRepository(Protocol):
    """
    Port: durable session progress and per-key records.

    update_session_counters writes absolute values from the snapshot, so a
    later successful write repairs an earlier failed one.
    """

    def create_session(self, session: DownloadSession) -> Result[DownloadSession]: ...

    def update_session_counters(self, session: DownloadSession) -> Result[DownloadSession]: ...

    def append_download_record(self, record: DownloadRecord) -> Result[DownloadRecord]: ...

    def get_session(self, session_id: str) -> Result[DownloadSession]: ...

    def list_records(self, session_id: str) -> Result[list[DownloadRecord]]: ...
