"""
Authority adapter — NfeConsultaProtocolo4 over mutual TLS via httpx.

Adapter layer — implements the AuthorityGateway port.

Per call:
  1. Validate the access key (invalid keys never leave the process)
  2. Build the one-line SOAP 1.2 envelope
  3. Open an ssl.SSLContext with the taxpayer's certificate, key and chain
  4. POST and pull cStat / nProt / protNFe out of the raw body

No retries here: a transport failure is reported once as
SOAP_TRANSPORT_ERROR and the caller decides what to do with the key.
"""

from __future__ import annotations

import os
import ssl
import tempfile
from pathlib import Path

import httpx
import structlog

from nfce_retrieval.adapters.soap_envelope import (
    SOAP_CONTENT_TYPE,
    build_consultation_envelope,
    parse_consultation_response,
)
from nfce_retrieval.config import AuthoritySettings
from nfce_retrieval.domain.failure import ErrorCode, InvalidAccessKey, SoapTransportError
from nfce_retrieval.domain.models import (
    ACCESS_KEY_PATTERN,
    DigitalCertificateMaterial,
    DocumentKey,
    Environment,
    SoapResult,
)
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

_USER_AGENT = "Mozilla/5.0 (compatible; NFC-e Downloader/1.0)"


def build_mutual_tls_context(
    material: DigitalCertificateMaterial,
    verify_server_certificate: bool,
) -> ssl.SSLContext:
    """
    SSL context presenting the client certificate (plus chain) to the server.

    ssl can only load key material from files, so the PEMs are written to a
    private temporary directory that is removed before this returns.
    """
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if verify_server_certificate:
        if material.chain_pem:
            context.load_verify_locations(cadata="".join(material.chain_pem))
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    with tempfile.TemporaryDirectory(prefix="nfce-mtls-") as tmp:
        cert_file = Path(tmp) / "client.pem"
        key_file = Path(tmp) / "client.key"
        cert_file.write_text(material.client_certificate_pem + "".join(material.chain_pem))
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as handle:
            handle.write(material.client_key_pem)
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context


class HttpAuthorityClient:
    """
    Consult an access key's authorization protocol at the tax authority.

    Implements the AuthorityGateway port.
    """

    def __init__(self, settings: AuthoritySettings, timeout: float = 30.0) -> None:
        self._settings = settings
        self._timeout = timeout

    def consult(
        self,
        key: DocumentKey,
        material: DigitalCertificateMaterial,
        environment: Environment | None = None,
    ) -> Result[SoapResult]:
        """
        Returns Result[SoapResult] whenever the authority answered, even if the
        answer carries no protocol number.
        Returns Result.failure(SOAP_TRANSPORT_ERROR, ...) on TLS/timeout/reset.
        """
        return Result.from_computation(
            lambda: self._do_consult(key, material, environment or self._settings.environment),
            ErrorCode.SOAP_TRANSPORT_ERROR,
            "Authority consultation failed",
        )

    def _do_consult(
        self,
        key: DocumentKey,
        material: DigitalCertificateMaterial,
        environment: Environment,
    ) -> SoapResult:
        if not ACCESS_KEY_PATTERN.match(str(key)):
            raise InvalidAccessKey(f"Invalid access key {str(key)!r}: expected 44 digits")

        url = self._settings.url_for(environment)
        envelope = build_consultation_envelope(key, environment)
        context = build_mutual_tls_context(material, self._settings.verify_server_certificate)

        log.info(
            "authority.consult_start",
            access_key=key.value,
            environment=environment.value,
            tp_amb=environment.tp_amb,
            url=url,
            chain_length=len(material.chain_pem),
        )

        try:
            with httpx.Client(verify=context, timeout=self._timeout) as client:
                response = client.post(
                    url,
                    content=envelope.encode("utf-8"),
                    headers={
                        "Content-Type": SOAP_CONTENT_TYPE,
                        "Accept": "application/soap+xml, text/xml, */*",
                        "User-Agent": _USER_AGENT,
                    },
                )
        except httpx.TransportError as e:
            log.error("authority.transport_error", access_key=key.value, error=str(e))
            raise SoapTransportError(f"SOAP transport error: {e}") from e

        if response.is_error:
            # SOAP faults arrive as 5xx with a parseable body
            log.warning("authority.http_error", access_key=key.value, status=response.status_code)

        result = parse_consultation_response(response.text, http_status=response.status_code)
        log.info(
            "authority.consult_complete",
            access_key=key.value,
            status=result.status,
            protocol_number=result.protocol_number,
            embedded_kind=result.embedded_kind.value if result.embedded_kind else None,
            size_bytes=len(response.content),
        )
        return result
