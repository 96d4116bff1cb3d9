"""
Portal adapter — Portal CFe REST API via httpx.

Adapter layer — implements the PortalGateway port.

Two endpoints, two authentication styles (both dictated by the Portal):
  1. GET {base}/nfce/fiscal-coupons/xml/{protocol}?chaveAcesso=..&apiKey=..
     → the token travels as a query parameter
  2. GET {base}/nfce/coupons/extract?...
     → the token and taxpayer id travel in x-authentication-* headers

Status mapping (document fetch):
  200 + XML body → Success      200 + anything else → INVALID_RESPONSE_SHAPE
  401 → CREDENTIAL_REJECTED     404 → DOCUMENT_NOT_FOUND
  other → UNEXPECTED_STATUS     timeout/network → PORTAL_TRANSPORT_ERROR
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import date
from typing import Any

import httpx
import structlog

from nfce_retrieval.config import PortalSettings
from nfce_retrieval.domain.credential import require_valid_credential
from nfce_retrieval.domain.failure import (
    CredentialRejected,
    DocumentNotFound,
    ErrorCode,
    InvalidAccessKey,
    InvalidResponseShape,
    PortalTransportError,
    ResponseParseError,
    UnexpectedStatus,
)
from nfce_retrieval.domain.models import (
    ACCESS_KEY_PATTERN,
    DocumentKey,
    PortalFetchResult,
    PortalSearchItem,
    PortalSearchResult,
)
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Fixed document-type filter of the extract endpoint (authorized NFC-e)
_SEARCH_DOCUMENT_TYPE = "100"


def _token_preview(token: str) -> str:
    return token[:12] + "..."


def _is_document_xml(body: str) -> bool:
    return "<?xml" in body and "<NFe" in body


def _parse_search_item(raw: dict[str, Any]) -> PortalSearchItem:
    series = raw.get("numSerieNfce")
    document_number = raw.get("numoDocFiscal")
    return PortalSearchItem(
        id=str(raw["id"]),
        access_key=str(raw["numeroNotaNfce"]),
        emission_date=raw.get("dataEmissao"),
        document_number=str(document_number) if document_number is not None else None,
        series=str(series) if series is not None else None,
        type=raw.get("tipoNfce"),
    )


def parse_search_payload(body: str, page: int = 1) -> PortalSearchResult:
    """Map the extract endpoint JSON `{data: [...], total: N}` to domain types."""
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ResponseParseError(f"Portal search returned malformed JSON: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("data", []), list):
        raise ResponseParseError("Portal search response has no 'data' array")

    try:
        items = tuple(_parse_search_item(item) for item in payload.get("data", []))
    except (KeyError, TypeError, AttributeError) as e:
        raise ResponseParseError(f"Portal search item is missing field {e}") from e

    total = payload.get("total")
    try:
        total_count = len(items) if total is None else int(total)
    except (TypeError, ValueError) as e:
        raise ResponseParseError(f"Portal search total is not a number: {total!r}") from e
    return PortalSearchResult(items=items, total=total_count, page=page)


class HttpPortalClient:
    """
    Fetch NFC-e XML and list emitted NFC-e from the Portal.

    Implements the PortalGateway port. No retries: each call is one attempt.
    """

    def __init__(self, settings: PortalSettings, timeout: float = 30.0) -> None:
        self._base_url = settings.base_url.rstrip("/")
        self._timeout = timeout

    # ─────────────────────── Document fetch ───────────────────────

    def fetch_document_xml(
        self,
        protocol_number: str,
        key: DocumentKey,
        bearer_token: str,
    ) -> Result[PortalFetchResult]:
        """
        Returns Result[PortalFetchResult] when the body is an NF-e XML document.
        The credential is validated before any request is made.
        """
        return (
            require_valid_credential(bearer_token)
            .map_failure(lambda err: replace(err, code=ErrorCode.CREDENTIAL_REJECTED))
            .flat_map(
                lambda _credential: Result.from_computation(
                    lambda: self._do_fetch(protocol_number, key, bearer_token),
                    ErrorCode.PORTAL_TRANSPORT_ERROR,
                    "Portal XML download failed",
                )
            )
        )

    def _do_fetch(self, protocol_number: str, key: DocumentKey, bearer_token: str) -> PortalFetchResult:
        if not ACCESS_KEY_PATTERN.match(str(key)):
            raise InvalidAccessKey(f"Invalid access key {str(key)!r}: expected 44 digits")

        url = f"{self._base_url}/nfce/fiscal-coupons/xml/{protocol_number}"
        log.info(
            "portal.fetch_start",
            access_key=key.value,
            protocol_number=protocol_number,
            api_key=_token_preview(bearer_token),
        )

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.get(
                    url,
                    params={"chaveAcesso": key.value, "apiKey": bearer_token},
                    headers={
                        "Accept": "application/xml, text/xml, */*",
                        "User-Agent": _USER_AGENT,
                    },
                )
        except httpx.TransportError as e:
            log.error("portal.transport_error", access_key=key.value, error=str(e))
            raise PortalTransportError(f"Portal request failed: {e}") from e

        status = response.status_code
        if status == 401:
            raise CredentialRejected("ApiKey invalid or expired (401)")
        if status == 404:
            raise DocumentNotFound("XML not found (404)")
        if not response.is_success:
            log.error("portal.unexpected_status", status=status, body=response.text[:500])
            raise UnexpectedStatus(status, f"Portal HTTP error {status}")

        body = response.text
        if not _is_document_xml(body):
            raise InvalidResponseShape("Portal response is not an NF-e XML document")

        log.info("portal.fetch_complete", access_key=key.value, size_bytes=len(body))
        return PortalFetchResult(xml_content=body, http_status=status)

    # ─────────────────────── Period search ───────────────────────

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
    ) -> Result[PortalSearchResult]:
        """
        One page of NFC-e emitted between the two dates (inclusive, whole days
        unless narrower times are given).
        """
        return (
            require_valid_credential(bearer_token)
            .map_failure(lambda err: replace(err, code=ErrorCode.CREDENTIAL_REJECTED))
            .flat_map(
                lambda _credential: Result.from_computation(
                    lambda: self._do_search(
                        start_date, end_date, taxpayer_id, bearer_token, page_size, page, start_time, end_time
                    ),
                    ErrorCode.PORTAL_TRANSPORT_ERROR,
                    "Portal period search failed",
                )
            )
        )

    def _do_search(
        self,
        start_date: date,
        end_date: date,
        taxpayer_id: str,
        bearer_token: str,
        page_size: int,
        page: int,
        start_time: str,
        end_time: str,
    ) -> PortalSearchResult:
        params = {
            "count": str(page_size),
            "page": str(page),
            "startDate": f"{start_date.isoformat()} {start_time}:00",
            "endDate": f"{end_date.isoformat()} {end_time}:59",
            "startDateTime": start_time,
            "endDateTime": end_time,
            "type": _SEARCH_DOCUMENT_TYPE,
            "ultimaNota": "false",
        }
        log.info(
            "portal.search_start",
            start=params["startDate"],
            end=params["endDate"],
            taxpayer_id=taxpayer_id,
            page=page,
            page_size=page_size,
        )

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.get(
                    f"{self._base_url}/nfce/coupons/extract",
                    params=params,
                    headers={
                        "Accept": "application/json, text/plain, */*",
                        "User-Agent": _USER_AGENT,
                        "x-authentication-taxid": taxpayer_id,
                        "x-authentication-token": bearer_token,
                    },
                )
        except httpx.TransportError as e:
            log.error("portal.transport_error", error=str(e))
            raise PortalTransportError(f"Portal request failed: {e}") from e

        if response.status_code == 401:
            raise CredentialRejected("ApiKey invalid or expired (401)")
        if not response.is_success:
            log.error("portal.unexpected_status", status=response.status_code, body=response.text[:500])
            raise UnexpectedStatus(response.status_code, f"Portal HTTP error {response.status_code}")

        result = parse_search_payload(response.text, page=page)
        log.info("portal.search_complete", page=page, found=len(result.items), total=result.total)
        return result
