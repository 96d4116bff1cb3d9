"""
Hybrid retrieval — resolve the protocol number via SOAP, fetch the XML via
the Portal, fall back to the SOAP-embedded XML when the Portal fails.

Domain layer — all I/O goes through the AuthorityGateway and PortalGateway
ports injected at construction.

The authority's SOAP service does not return the full NFC-e (model 65)
document, only the authorization protocol; the Portal serves the document
but needs that protocol number. Hence two hops:

  credential ok? ──no──▶ CREDENTIAL_REJECTED (no network)
        │
  SOAP consult ──fail──▶ SOAP error
        │
  protocol? ──no──▶ embedded XML? ──yes──▶ success (soap)
        │                    └──no──▶ PROTOCOL_NUMBER_MISSING
  Portal fetch ──ok──▶ success (hybrid)
        └──fail──▶ embedded XML? ──yes──▶ success (soap)
                             └──no──▶ Portal error
"""

from __future__ import annotations

import structlog

from nfce_retrieval.domain.credential import require_valid_credential
from nfce_retrieval.domain.failure import ErrorCode, FailureDescription
from nfce_retrieval.domain.models import (
    DigitalCertificateMaterial,
    DocumentKey,
    Environment,
    RetrievalMethod,
    RetrievalResult,
    SoapResult,
)
from nfce_retrieval.domain.ports import AuthorityGateway, PortalGateway

log = structlog.get_logger()


def _failed(
    error: FailureDescription,
    prefix: str = "",
    protocol_number: str | None = None,
    status_code: str | None = None,
) -> RetrievalResult:
    return RetrievalResult(
        success=False,
        error_message=f"{prefix}{error.message}",
        error_code=error.code,
        protocol_number=protocol_number,
        status_code=status_code,
    )


class HybridRetriever:
    """Retrieve one NFC-e XML per call, combining authority and Portal."""

    def __init__(
        self,
        authority: AuthorityGateway,
        portal: PortalGateway,
        environment: Environment = Environment.PRODUCTION,
    ) -> None:
        self._authority = authority
        self._portal = portal
        self._environment = environment

    def retrieve(
        self,
        key: DocumentKey,
        material: DigitalCertificateMaterial,
        bearer_token: str,
    ) -> RetrievalResult:
        credential = require_valid_credential(bearer_token)
        if credential.is_failure():
            error = credential.error()
            log.error("retrieval.credential_rejected", access_key=key.value, reason=error.message)
            return RetrievalResult(
                success=False,
                error_message=error.message,
                error_code=ErrorCode.CREDENTIAL_REJECTED,
            )

        consulted = self._authority.consult(key, material, self._environment)
        if consulted.is_failure():
            return _failed(consulted.error(), prefix="SOAP error: ")

        return self._continue_after_soap(key, consulted.value(), bearer_token)

    def _continue_after_soap(
        self,
        key: DocumentKey,
        soap: SoapResult,
        bearer_token: str,
    ) -> RetrievalResult:
        if soap.protocol_number is None:
            if soap.embedded_xml is not None:
                log.info("retrieval.soap_xml_without_protocol", access_key=key.value, status=soap.status)
                return RetrievalResult(
                    success=True,
                    xml_content=soap.embedded_xml,
                    status_code=soap.status,
                    method=RetrievalMethod.SOAP,
                )
            log.error("retrieval.protocol_missing", access_key=key.value, status=soap.status)
            return RetrievalResult(
                success=False,
                error_message=(
                    "Protocol number not found in authority response "
                    f"(Status: {soap.status or 'unknown'})"
                ),
                error_code=ErrorCode.PROTOCOL_NUMBER_MISSING,
                status_code=soap.status,
            )

        if not soap.is_authorized:
            # Non-authorized documents sometimes still have retrievable XML
            log.warning("retrieval.not_authorized", access_key=key.value, status=soap.status)

        fetched = self._portal.fetch_document_xml(soap.protocol_number, key, bearer_token)
        if fetched.is_success():
            log.info("retrieval.complete", access_key=key.value, method=RetrievalMethod.HYBRID.value)
            return RetrievalResult(
                success=True,
                xml_content=fetched.value().xml_content,
                protocol_number=soap.protocol_number,
                status_code=soap.status,
                method=RetrievalMethod.HYBRID,
            )

        error = fetched.error()
        if soap.embedded_xml is not None:
            log.warning(
                "retrieval.portal_failed_using_soap_xml",
                access_key=key.value,
                portal_error=error.message,
            )
            return RetrievalResult(
                success=True,
                xml_content=soap.embedded_xml,
                protocol_number=soap.protocol_number,
                status_code=soap.status,
                method=RetrievalMethod.SOAP,
            )

        log.error("retrieval.portal_failed", access_key=key.value, error=error.message)
        return _failed(
            error,
            prefix="Portal error: ",
            protocol_number=soap.protocol_number,
            status_code=soap.status,
        )

    def retrieve_with_protocol(
        self,
        key: DocumentKey,
        protocol_number: str,
        bearer_token: str,
    ) -> RetrievalResult:
        """
        Portal-only path for keys whose protocol number is already known
        (period search listings); the SOAP hop is skipped entirely.
        """
        credential = require_valid_credential(bearer_token)
        if credential.is_failure():
            return RetrievalResult(
                success=False,
                error_message=credential.error().message,
                error_code=ErrorCode.CREDENTIAL_REJECTED,
            )

        fetched = self._portal.fetch_document_xml(protocol_number, key, bearer_token)
        if fetched.is_failure():
            return _failed(fetched.error(), prefix="Portal error: ", protocol_number=protocol_number)

        log.info("retrieval.complete", access_key=key.value, method=RetrievalMethod.PORTAL.value)
        return RetrievalResult(
            success=True,
            xml_content=fetched.value().xml_content,
            protocol_number=protocol_number,
            method=RetrievalMethod.PORTAL,
        )
