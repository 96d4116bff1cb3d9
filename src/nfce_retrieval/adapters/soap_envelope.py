"""
SOAP envelope construction and response field extraction for NfeConsulta4.

The request is built as one line with no incidental whitespace: the
authority's endpoints reject envelopes with indentation between elements.

The response is searched with regular expressions instead of an XML parser.
It wraps the consultation result in a SOAP body whose namespace and element
ordering quirks break strict parsers, and the embedded `protNFe` must be
returned byte-for-byte (it carries a signature).
"""

from __future__ import annotations

import re

from nfce_retrieval.domain.models import (
    DocumentKey,
    EmbeddedXmlKind,
    Environment,
    SoapResult,
)

SOAP_CONTENT_TYPE = "application/soap+xml; charset=utf-8"

_ENVELOPE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<soap12:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
    'xmlns:soap12="http://www.w3.org/2003/05/soap-envelope">'
    "<soap12:Body>"
    '<nfeDadosMsg xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/NfeConsulta4">'
    '<consSitNFe xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00">'
    "<tpAmb>{tp_amb}</tpAmb>"
    "<xServ>CONSULTAR</xServ>"
    "<chNFe>{access_key}</chNFe>"
    "</consSitNFe>"
    "</nfeDadosMsg>"
    "</soap12:Body>"
    "</soap12:Envelope>"
)

_STATUS = re.compile(r"<cStat>(.*?)</cStat>")
_PROTOCOL_BARE = re.compile(r"<nProt>(.*?)</nProt>")
_PROTOCOL_IN_INF_PROT = re.compile(r"<infProt[^>]*>[\s\S]*?<nProt>(.*?)</nProt>[\s\S]*?</infProt>")
_PROT_NFE = re.compile(r"<protNFe[^>]*>[\s\S]*?</protNFe>")
_RET_CONS_SIT_NFE = re.compile(r"<retConsSitNFe[^>]*>[\s\S]*?</retConsSitNFe>")


def build_consultation_envelope(key: DocumentKey, environment: Environment) -> str:
    return _ENVELOPE.format(tp_amb=environment.tp_amb, access_key=key.value)


def extract_status(response: str) -> str | None:
    match = _STATUS.search(response)
    return match.group(1) if match else None


def extract_protocol_number(response: str) -> str | None:
    """Bare <nProt> first, then <nProt> nested in an <infProt> wrapper."""
    for pattern in (_PROTOCOL_BARE, _PROTOCOL_IN_INF_PROT):
        match = pattern.search(response)
        if match and match.group(1):
            return match.group(1)
    return None


def extract_embedded_xml(response: str) -> tuple[str | None, EmbeddedXmlKind | None]:
    """
    Full <protNFe> element if present, else the <retConsSitNFe> wrapper.

    The wrapper carries status only, no document; callers that need to know
    whether a real document came back check the returned kind.
    """
    match = _PROT_NFE.search(response)
    if match:
        return match.group(0), EmbeddedXmlKind.PROT_NFE
    match = _RET_CONS_SIT_NFE.search(response)
    if match:
        return match.group(0), EmbeddedXmlKind.RET_CONS_SIT_NFE
    return None, None


def parse_consultation_response(response: str, http_status: int | None = None) -> SoapResult:
    embedded_xml, embedded_kind = extract_embedded_xml(response)
    return SoapResult(
        status=extract_status(response),
        protocol_number=extract_protocol_number(response),
        embedded_xml=embedded_xml,
        embedded_kind=embedded_kind,
        http_status=http_status,
    )
