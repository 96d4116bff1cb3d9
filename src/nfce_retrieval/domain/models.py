"""
Domain models — immutable data structures for certificates, credentials,
access keys, upstream responses and download progress.

All models are frozen dataclasses. Secrets (PEM keys, raw tokens) are
excluded from repr so they never reach a log line by accident.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID, uuid4

from nfce_retrieval.domain.failure import ErrorCode

ACCESS_KEY_PATTERN = re.compile(r"^[0-9]{44}$")

AUTHORIZED_STATUS = "100"


class Environment(StrEnum):
    PRODUCTION = "production"
    STAGING = "staging"

    @property
    def tp_amb(self) -> str:
        """SOAP environment discriminator: 1 = production, 2 = staging."""
        return "1" if self is Environment.PRODUCTION else "2"


class RetrievalMethod(StrEnum):
    SOAP = "soap"
    PORTAL = "portal"
    HYBRID = "hybrid"


class SessionStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class EmbeddedXmlKind(StrEnum):
    PROT_NFE = "protNFe"
    RET_CONS_SIT_NFE = "retConsSitNFe"


# ─────────────────────── Credentials ───────────────────────


@dataclass(frozen=True, slots=True)
class DigitalCertificateMaterial:
    """
    PEM material derived from a PKCS#12 container.

    Lives in memory for the duration of one session and is never persisted.
    """

    client_certificate_pem: str = field(repr=False)
    client_key_pem: str = field(repr=False)
    chain_pem: tuple[str, ...] = field(default=(), repr=False)


@dataclass(frozen=True, slots=True)
class BearerCredential:
    """Claims read (not verified) from a portal apiKey JWT."""

    raw_token: str = field(repr=False)
    expires_at: datetime
    subject_id: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


@dataclass(frozen=True, slots=True)
class CredentialCheck:
    """Non-raising view of a credential validation, for status displays."""

    valid: bool
    expires_at: datetime | None = None
    subject_id: str | None = None
    expires_in: str | None = None
    error: str | None = None


# ─────────────────────── Access keys ───────────────────────


def is_valid_access_key(raw: str) -> bool:
    """True iff the trimmed string is exactly 44 digits."""
    return bool(ACCESS_KEY_PATTERN.match(raw.strip()))


@dataclass(frozen=True, slots=True)
class DocumentKey:
    """
    A 44-digit NFC-e access key.

    Layout: UF(2) AAMM(4) CNPJ(14) mod(2) serie(3) nNF(9) tpEmis(1)
    emitter(1) sequence(7) DV(1).
    """

    value: str

    def __post_init__(self) -> None:
        if not ACCESS_KEY_PATTERN.match(self.value):
            raise ValueError(f"Invalid access key {self.value!r}: expected 44 digits")

    @classmethod
    def parse(cls, raw: str) -> DocumentKey:
        return cls(raw.strip())

    @property
    def state_code(self) -> str:
        return self.value[0:2]

    @property
    def year(self) -> str:
        return f"20{self.value[2:4]}"

    @property
    def month(self) -> str:
        return self.value[4:6]

    @property
    def issuer_tax_id(self) -> str:
        return self.value[6:20]

    @property
    def model(self) -> str:
        return self.value[20:22]

    @property
    def series(self) -> str:
        return self.value[22:25]

    @property
    def number(self) -> str:
        return self.value[25:34]

    @property
    def emission_type(self) -> str:
        return self.value[34:35]

    @property
    def emitter_indicator(self) -> str:
        return self.value[35:36]

    @property
    def sequence(self) -> str:
        return self.value[36:43]

    @property
    def check_digit(self) -> str:
        return self.value[43:44]

    def __str__(self) -> str:
        return self.value


# ─────────────────────── Upstream responses ───────────────────────


@dataclass(frozen=True, slots=True)
class SoapResult:
    """Fields pulled out of a NfeConsultaProtocolo4 response."""

    status: str | None = None
    protocol_number: str | None = None
    embedded_xml: str | None = field(default=None, repr=False)
    embedded_kind: EmbeddedXmlKind | None = None
    http_status: int | None = None

    @property
    def is_authorized(self) -> bool:
        return self.status == AUTHORIZED_STATUS


@dataclass(frozen=True, slots=True)
class PortalFetchResult:
    xml_content: str = field(repr=False)
    http_status: int = 200


@dataclass(frozen=True, slots=True)
class PortalSearchItem:
    """One entry of the Portal period listing; `id` is the protocol number."""

    id: str
    access_key: str
    emission_date: str | None = None
    document_number: str | None = None
    series: str | None = None
    type: int | None = None

    @property
    def protocol_number(self) -> str:
        return self.id


@dataclass(frozen=True, slots=True)
class PortalSearchResult:
    items: tuple[PortalSearchItem, ...] = ()
    total: int = 0
    page: int = 1


@dataclass(frozen=True, slots=True)
class RetrievalResult:
    """Outcome of one retrieval attempt for one key; `method` records provenance."""

    success: bool
    xml_content: str | None = field(default=None, repr=False)
    protocol_number: str | None = None
    status_code: str | None = None
    error_message: str | None = None
    method: RetrievalMethod | None = None
    error_code: ErrorCode | None = None


# ─────────────────────── Download progress ───────────────────────


@dataclass(frozen=True, slots=True)
class DownloadSession:
    """
    Progress snapshot of a batch run.

    Snapshots are replaced, never mutated: record_outcome() returns the next
    snapshot with counters incremented by exactly one key.
    """

    id: str
    total_keys: int
    owner_id: str | None = None
    processed_keys: int = 0
    success_count: int = 0
    failure_count: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def record_outcome(self, succeeded: bool) -> DownloadSession:
        return replace(
            self,
            processed_keys=self.processed_keys + 1,
            success_count=self.success_count + (1 if succeeded else 0),
            failure_count=self.failure_count + (0 if succeeded else 1),
        )

    def finish(self, status: SessionStatus) -> DownloadSession:
        return replace(self, status=status, completed_at=datetime.now(UTC))

    @property
    def is_complete(self) -> bool:
        return self.processed_keys == self.total_keys


@dataclass(frozen=True, slots=True)
class DownloadRecord:
    """Per-key outcome, appended once per processed key."""

    session_id: str
    access_key: str
    status: RecordStatus
    id: UUID = field(default_factory=uuid4)
    xml_location: str | None = None
    error_message: str | None = None
    downloaded_at: datetime | None = None
