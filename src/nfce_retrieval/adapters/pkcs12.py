"""
PKCS#12 adapter — taxpayer certificate container → PEM material for mutual TLS.

Adapter layer — implements the CertificateTransformer port using:
  - cryptography (PyCA): MAC check, bag decryption, PEM serialization
  - asn1crypto: walk the unencrypted SafeContents to find a plain keyBag

Pipeline:
  container bytes (DER or base64 text)
    → cryptography: load_pkcs12(password) — wrong password fails here
    → asn1crypto: Pfx.authenticated_safe → 'data' SafeContents → keyBag?
    → fallback: the pkcs8ShroudedKeyBag key decrypted by cryptography
    → DigitalCertificateMaterial (client cert, key, chain)

Brazilian A1 certificates almost always ship the key shrouded; the plain
keyBag lookup runs first because some exports (and unencrypted test
containers) store it in the clear.
"""

from __future__ import annotations

import base64
import binascii

import structlog
from asn1crypto import pkcs12 as asn1_pkcs12
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from nfce_retrieval.domain.failure import CertificateError, ErrorCode
from nfce_retrieval.domain.models import DigitalCertificateMaterial
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

_DER_SEQUENCE_TAG = 0x30


def _to_der(container: bytes) -> bytes:
    """Accept raw DER or base64 text (how uploaded certificates are stored)."""
    if container[:1] and container[0] == _DER_SEQUENCE_TAG:
        return container
    try:
        return base64.b64decode(b"".join(container.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise CertificateError("Certificate container is neither DER nor base64") from e


def _find_plain_key_bag(der: bytes) -> PrivateKeyTypes | None:
    """
    Return the key stored in an unencrypted keyBag, or None.

    Only SafeContents carried as plain 'data' are inspected; encrypted
    SafeContents never hold a keyBag in practice.
    """
    try:
        pfx = asn1_pkcs12.Pfx.load(der)
        authenticated_safe = pfx.authenticated_safe
    except ValueError:
        return None

    for content_info in authenticated_safe:
        if content_info["content_type"].native != "data":
            continue
        safe_contents = asn1_pkcs12.SafeContents.load(content_info["content"].native)
        for bag in safe_contents:
            if bag["bag_id"].native != "key_bag":
                continue
            # bag_value carries an explicit [0] tag around the PrivateKeyInfo
            key_info = bag["bag_value"].untag().dump()
            try:
                return serialization.load_der_private_key(key_info, password=None)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                log.warning("certificate.key_bag_unreadable", error=str(e))
    return None


def _key_to_pem(key: PrivateKeyTypes) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _cert_to_pem(cert: pkcs12.PKCS12Certificate) -> str:
    return cert.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


class Pkcs12CertificateTransformer:
    """
    Convert a PKCS#12 container + password into DigitalCertificateMaterial.

    Implements the CertificateTransformer port.
    All exceptions are caught at this adapter boundary via Result.from_computation().
    """

    def transform(self, container: bytes, password: str) -> Result[DigitalCertificateMaterial]:
        """
        Returns Result[DigitalCertificateMaterial] on success.
        Returns Result.failure(CERTIFICATE_ERROR, ...) on wrong password,
        missing certificate bag or missing private key — never partial material.
        """
        return Result.from_computation(
            lambda: self._do_transform(container, password),
            ErrorCode.CERTIFICATE_ERROR,
            "Failed to read PKCS#12 certificate",
        )

    def _do_transform(self, container: bytes, password: str) -> DigitalCertificateMaterial:
        der = _to_der(container)

        try:
            bundle = pkcs12.load_pkcs12(der, password.encode("utf-8") if password else None)
        except ValueError as e:
            raise CertificateError("Invalid certificate password or corrupt PKCS#12 data") from e

        certificates = ([bundle.cert] if bundle.cert is not None else []) + list(bundle.additional_certs)
        if not certificates:
            raise CertificateError("No certificate bag found in PKCS#12 container")

        key = _find_plain_key_bag(der)
        key_bag = "key_bag"
        if key is None:
            key = bundle.key
            key_bag = "pkcs8_shrouded_key_bag"
        if key is None:
            raise CertificateError("No private key found in PKCS#12 container")

        client, *chain = certificates
        log.info(
            "certificate.loaded",
            subject=client.certificate.subject.rfc4514_string(),
            not_after=client.certificate.not_valid_after_utc.isoformat(),
            chain_length=len(chain),
            key_bag=key_bag,
        )

        return DigitalCertificateMaterial(
            client_certificate_pem=_cert_to_pem(client),
            client_key_pem=_key_to_pem(key),
            chain_pem=tuple(_cert_to_pem(cert) for cert in chain),
        )
