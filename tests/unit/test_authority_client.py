"""
Unit tests for the authority SOAP adapter.

Uses respx to mock httpx (never makes real HTTP requests). The mutual-TLS
context is still built from real generated material, so a broken
certificate/key pairing would surface here.
"""

from __future__ import annotations

import ssl

import httpx
import pytest
import respx

from nfce_retrieval.adapters.authority_client import HttpAuthorityClient, build_mutual_tls_context
from nfce_retrieval.config import AuthoritySettings
from nfce_retrieval.domain.failure import ErrorCode
from nfce_retrieval.domain.models import DigitalCertificateMaterial, DocumentKey, Environment
from tests.conftest import KEY_A, ResultAssertions, soap_response

SETTINGS = AuthoritySettings()


@pytest.fixture()
def client() -> HttpAuthorityClient:
    return HttpAuthorityClient(SETTINGS, timeout=5)


class TestMutualTlsContext:
    def test_unverified_context_by_default(self, certificate_material: DigitalCertificateMaterial) -> None:
        context = build_mutual_tls_context(certificate_material, verify_server_certificate=False)

        assert context.verify_mode == ssl.CERT_NONE
        assert not context.check_hostname

    def test_verified_context_trusts_chain(self, certificate_material: DigitalCertificateMaterial) -> None:
        context = build_mutual_tls_context(certificate_material, verify_server_certificate=True)

        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname


class TestConsult:
    @respx.mock
    def test_authorized_response(
        self, client: HttpAuthorityClient, certificate_material: DigitalCertificateMaterial
    ) -> None:
        """
        GIVEN the authority answers cStat=100 with protNFe
        WHEN consult is called
        THEN Success with status, protocol number and embedded XML.
        """
        route = respx.post(SETTINGS.production_url).mock(
            return_value=httpx.Response(200, text=soap_response(protocol_number="323240000012345"))
        )

        result = client.consult(DocumentKey(KEY_A), certificate_material)

        soap = ResultAssertions.assert_success(result)
        assert soap.status == "100"
        assert soap.protocol_number == "323240000012345"
        assert soap.embedded_xml is not None
        request = route.calls.last.request
        assert request.headers["content-type"] == "application/soap+xml; charset=utf-8"
        assert f"<chNFe>{KEY_A}</chNFe>".encode() in request.content

    @respx.mock
    def test_staging_environment_uses_staging_url(
        self, client: HttpAuthorityClient, certificate_material: DigitalCertificateMaterial
    ) -> None:
        route = respx.post(SETTINGS.staging_url).mock(
            return_value=httpx.Response(200, text=soap_response())
        )

        ResultAssertions.assert_success(
            client.consult(DocumentKey(KEY_A), certificate_material, Environment.STAGING)
        )
        assert b"<tpAmb>2</tpAmb>" in route.calls.last.request.content

    @respx.mock
    def test_answer_without_protocol_is_still_success(
        self, client: HttpAuthorityClient, certificate_material: DigitalCertificateMaterial
    ) -> None:
        respx.post(SETTINGS.production_url).mock(
            return_value=httpx.Response(200, text=soap_response(status="217", protocol_number=None))
        )

        soap = ResultAssertions.assert_success(client.consult(DocumentKey(KEY_A), certificate_material))

        assert soap.protocol_number is None
        assert soap.status == "217"

    @respx.mock
    def test_http_error_body_is_still_parsed(
        self, client: HttpAuthorityClient, certificate_material: DigitalCertificateMaterial
    ) -> None:
        respx.post(SETTINGS.production_url).mock(
            return_value=httpx.Response(500, text="<soap:Fault><cStat>999</cStat></soap:Fault>")
        )

        soap = ResultAssertions.assert_success(client.consult(DocumentKey(KEY_A), certificate_material))

        assert soap.status == "999"
        assert soap.http_status == 500

    @respx.mock
    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectTimeout("timed out"), httpx.ConnectError("handshake failure"), httpx.ReadError("reset")],
    )
    def test_transport_errors(
        self,
        client: HttpAuthorityClient,
        certificate_material: DigitalCertificateMaterial,
        error: httpx.TransportError,
    ) -> None:
        """
        GIVEN the TLS handshake, connect or read fails
        WHEN consult is called
        THEN SOAP_TRANSPORT_ERROR, never an exception.
        """
        respx.post(SETTINGS.production_url).mock(side_effect=error)

        result = client.consult(DocumentKey(KEY_A), certificate_material)

        ResultAssertions.assert_failure(result, ErrorCode.SOAP_TRANSPORT_ERROR)
