"""
Shared test fixtures and helpers for the nfce-retrieval test suite.

Certificates are generated on the fly with cryptography (a CA plus a client
certificate it signed) and packed into PKCS#12 containers; bearer
credentials are unsigned JWTs built from a claims dict. No fixture files.
"""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from nfce_retrieval.domain.failure import ErrorCode, FailureDescription
from nfce_retrieval.domain.models import DigitalCertificateMaterial
from nfce_retrieval.domain.result import Result

T = TypeVar("T")

# ─────────────────────── Access keys ───────────────────────

KEY_A = "23240612345678000190650010000000011000000011"
KEY_B = "23240612345678000190650010000000021000000022"
KEY_C = "23240612345678000190650010000000031000000033"
TAXPAYER_ID = "12345678000190"
CERTIFICATE_PASSWORD = "s3cret"

NFE_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<nfeProc versao="4.00" xmlns="http://www.portalfiscal.inf.br/nfe">'
    '<NFe><infNFe Id="NFe{key}"><ide><mod>65</mod></ide></infNFe></NFe>'
    "</nfeProc>"
)


def nfe_xml(key: str = KEY_A) -> str:
    return NFE_XML.format(key=key)


# ─────────────────────── SOAP responses ───────────────────────


def soap_response(
    status: str = "100",
    protocol_number: str | None = "323240000012345",
    with_prot_nfe: bool = True,
) -> str:
    """NfeConsulta4 response body as the authority returns it."""
    prot = ""
    if protocol_number is not None and with_prot_nfe:
        prot = (
            '<protNFe versao="4.00"><infProt>'
            f"<cStat>{status}</cStat><nProt>{protocol_number}</nProt>"
            "</infProt></protNFe>"
        )
    elif protocol_number is not None:
        prot = f"<nProt>{protocol_number}</nProt>"
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope"><soap:Body>'
        '<nfeResultMsg xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/NfeConsulta4">'
        '<retConsSitNFe versao="4.00" xmlns="http://www.portalfiscal.inf.br/nfe">'
        f"<tpAmb>1</tpAmb><cStat>{status}</cStat><xMotivo>Autorizado</xMotivo>"
        f"{prot}"
        "</retConsSitNFe></nfeResultMsg></soap:Body></soap:Envelope>"
    )


# ─────────────────────── Bearer credentials ───────────────────────


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_jwt(
    expires_in: timedelta = timedelta(hours=2),
    subject: str | None = TAXPAYER_ID,
    claims: dict[str, object] | None = None,
) -> str:
    """Unsigned JWT with `exp` relative to now and an optional `sub`."""
    payload: dict[str, object] = {"exp": int((datetime.now(UTC) + expires_in).timestamp())}
    if subject is not None:
        payload["sub"] = subject
    if claims is not None:
        payload = claims
    header = _b64url(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    return f"{header}.{body}.{_b64url(b'signature')}"


@pytest.fixture()
def valid_token() -> str:
    return make_jwt()


@pytest.fixture()
def expired_token() -> str:
    return make_jwt(expires_in=timedelta(hours=-1))


# ─────────────────────── Certificates ───────────────────────


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _certificate(
    subject: str,
    key: ec.EllipticCurvePrivateKey,
    issuer: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    is_ca: bool,
) -> x509.Certificate:
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


def make_pkcs12(
    password: str | None = CERTIFICATE_PASSWORD,
    with_chain: bool = True,
    include_key: bool = True,
) -> bytes:
    """
    DER PKCS#12 with a client certificate signed by a throwaway CA.

    password=None stores the key in a plain keyBag; otherwise the key is
    shrouded with the best available encryption.
    """
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = _certificate("Test AC Raiz", ca_key, "Test AC Raiz", ca_key, is_ca=True)
    client_key = ec.generate_private_key(ec.SECP256R1())
    client_cert = _certificate("EMPRESA TESTE:12345678000190", client_key, "Test AC Raiz", ca_key, is_ca=False)

    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(password.encode()) if password else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(
        name=b"client",
        key=client_key if include_key else None,
        cert=client_cert,
        cas=[ca_cert] if with_chain else None,
        encryption_algorithm=encryption,
    )


@pytest.fixture(scope="session")
def pkcs12_container() -> bytes:
    return make_pkcs12()


@pytest.fixture(scope="session")
def certificate_material(pkcs12_container: bytes) -> DigitalCertificateMaterial:
    """Material produced by the real transformer from the session container."""
    from nfce_retrieval.adapters.pkcs12 import Pkcs12CertificateTransformer

    return ResultAssertions.assert_success(
        Pkcs12CertificateTransformer().transform(pkcs12_container, CERTIFICATE_PASSWORD)
    )


# ─────────────────────── Result assertions ───────────────────────


class ResultAssertions:
    """Expressive test assertions for Result values."""

    @staticmethod
    def assert_success(result: Result[T], message: str = "") -> T:
        context = f" ({message})" if message else ""
        assert result.is_success(), (
            f"Expected Success but got Failure("
            f"{result.error().code.value}: {result.error().message!r}){context}"
        )
        return result.value()

    @staticmethod
    def assert_failure(
        result: Result[T],
        expected_code: ErrorCode | None = None,
        message: str = "",
    ) -> FailureDescription:
        context = f" ({message})" if message else ""
        assert result.is_failure(), f"Expected Failure but got Success({result.value()!r}){context}"
        error = result.error()
        if expected_code is not None:
            assert error.code == expected_code, (
                f"Expected error code {expected_code.value} "
                f"but got {error.code.value}: {error.message!r}{context}"
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        assert result.is_failure(), f"Expected Failure but got Success({result.value()!r})"
        error = result.error()
        assert substring.lower() in error.message.lower(), (
            f"Expected failure message to contain {substring!r} but message was: {error.message!r}"
        )
