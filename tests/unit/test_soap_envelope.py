"""
Unit tests for SOAP envelope construction and response extraction.
"""

from __future__ import annotations

from nfce_retrieval.adapters.soap_envelope import (
    build_consultation_envelope,
    extract_embedded_xml,
    extract_protocol_number,
    extract_status,
    parse_consultation_response,
)
from nfce_retrieval.domain.models import DocumentKey, EmbeddedXmlKind, Environment
from tests.conftest import KEY_A, soap_response


class TestBuildEnvelope:
    def test_envelope_carries_key_environment_and_namespace(self) -> None:
        envelope = build_consultation_envelope(DocumentKey(KEY_A), Environment.PRODUCTION)

        assert envelope.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert f"<chNFe>{KEY_A}</chNFe>" in envelope
        assert "<tpAmb>1</tpAmb>" in envelope
        assert "<xServ>CONSULTAR</xServ>" in envelope
        assert 'xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/NfeConsulta4"' in envelope
        assert 'versao="4.00"' in envelope

    def test_staging_uses_tp_amb_2(self) -> None:
        envelope = build_consultation_envelope(DocumentKey(KEY_A), Environment.STAGING)

        assert "<tpAmb>2</tpAmb>" in envelope

    def test_envelope_is_a_single_line_without_inter_element_whitespace(self) -> None:
        envelope = build_consultation_envelope(DocumentKey(KEY_A), Environment.PRODUCTION)

        assert "\n" not in envelope
        assert "> <" not in envelope


class TestExtraction:
    def test_authorized_response(self) -> None:
        """
        GIVEN a cStat=100 response with protNFe
        WHEN parsed
        THEN status, protocol and the byte-exact protNFe element come out.
        """
        body = soap_response(status="100", protocol_number="323240000012345")

        result = parse_consultation_response(body, http_status=200)

        assert result.status == "100"
        assert result.is_authorized
        assert result.protocol_number == "323240000012345"
        assert result.embedded_kind is EmbeddedXmlKind.PROT_NFE
        assert result.embedded_xml is not None
        assert result.embedded_xml.startswith('<protNFe versao="4.00">')
        assert result.embedded_xml.endswith("</protNFe>")
        assert result.embedded_xml in body
        assert result.http_status == 200

    def test_protocol_inside_inf_prot_with_attributes(self) -> None:
        body = '<infProt Id="ID123"><tpAmb>1</tpAmb><nProt>999</nProt></infProt>'

        assert extract_protocol_number(body) == "999"

    def test_empty_nprot_counts_as_missing(self) -> None:
        assert extract_protocol_number("<nProt></nProt>") is None

    def test_status_only_response_falls_back_to_wrapper(self) -> None:
        """
        GIVEN a response with cStat but neither nProt nor protNFe
        WHEN parsed
        THEN no protocol, and the retConsSitNFe wrapper is the embedded XML.
        """
        body = soap_response(status="217", protocol_number=None)

        result = parse_consultation_response(body)

        assert result.status == "217"
        assert result.protocol_number is None
        assert result.embedded_kind is EmbeddedXmlKind.RET_CONS_SIT_NFE
        assert result.embedded_xml is not None
        assert result.embedded_xml.startswith("<retConsSitNFe")

    def test_nothing_recognisable(self) -> None:
        assert extract_status("<html>gateway timeout</html>") is None
        assert extract_embedded_xml("<html/>") == (None, None)
