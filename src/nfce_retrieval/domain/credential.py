"""
Bearer credential validation — reads the claims of the portal apiKey.

The apiKey is a JWT issued by the Portal. The signature is NOT verified:
the Portal is the source of truth and rejects forged tokens itself; the
engine only needs `exp` (to avoid burning a batch on an expired token)
and `sub` (the taxpayer id the Portal search expects in its headers).
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlsplit

from nfce_retrieval.domain.failure import (
    ErrorCode,
    ExpiredCredential,
    MalformedCredential,
)
from nfce_retrieval.domain.models import BearerCredential, CredentialCheck
from nfce_retrieval.domain.result import Result

PORTAL_HOST = "cfe.sefaz.ce.gov.br"


def _decode_segment(segment: str) -> dict[str, object]:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise MalformedCredential(f"Credential payload is not base64url JSON: {e}") from e
    if not isinstance(claims, dict):
        raise MalformedCredential("Credential payload is not a JSON object")
    return claims


def _parse(token: str, require_subject: bool) -> BearerCredential:
    segments = token.strip().split(".")
    if len(segments) != 3:
        raise MalformedCredential(
            f"Credential is not a JWT: expected 3 segments, got {len(segments)}"
        )

    claims = _decode_segment(segments[1])

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        raise MalformedCredential("Credential has no numeric 'exp' claim")

    sub = claims.get("sub")
    subject_id = str(sub) if sub not in (None, "") else None
    if require_subject and subject_id is None:
        raise MalformedCredential("Credential has no 'sub' (taxpayer id) claim")

    return BearerCredential(
        raw_token=token.strip(),
        expires_at=datetime.fromtimestamp(exp, tz=UTC),
        subject_id=subject_id,
    )


def parse_bearer_credential(token: str, require_subject: bool = False) -> Result[BearerCredential]:
    """Structural parse only — an expired token still parses."""
    return Result.from_computation(
        lambda: _parse(token, require_subject),
        ErrorCode.MALFORMED_CREDENTIAL,
        "Credential could not be parsed",
    )


def _ensure_unexpired(credential: BearerCredential, now: datetime | None) -> BearerCredential:
    if credential.is_expired(now):
        raise ExpiredCredential(f"Credential expired at {credential.expires_at.isoformat()}")
    return credential


def require_valid_credential(
    token: str | None,
    now: datetime | None = None,
    require_subject: bool = False,
) -> Result[BearerCredential]:
    """Structural parse plus expiry check against `now` (defaults to call time)."""
    if not token:
        return Result.failure(ErrorCode.MALFORMED_CREDENTIAL, "No credential supplied")
    return parse_bearer_credential(token, require_subject).flat_map(
        lambda credential: Result.from_computation(
            lambda: _ensure_unexpired(credential, now),
            ErrorCode.EXPIRED_CREDENTIAL,
            "Credential expired",
        )
    )


def _format_remaining(expires_at: datetime, now: datetime) -> str:
    remaining = int((expires_at - now).total_seconds())
    hours, rest = divmod(remaining, 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def check_credential(token: str, now: datetime | None = None) -> CredentialCheck:
    """
    Validate without raising, for display purposes.

    An expired token yields valid=False with expires_at still populated.
    """
    now = now or datetime.now(UTC)
    parsed = parse_bearer_credential(token)
    if parsed.is_failure():
        return CredentialCheck(valid=False, error=parsed.error().message)

    credential = parsed.value()
    if credential.is_expired(now):
        return CredentialCheck(
            valid=False,
            expires_at=credential.expires_at,
            subject_id=credential.subject_id,
            error="Credential expired",
        )
    return CredentialCheck(
        valid=True,
        expires_at=credential.expires_at,
        subject_id=credential.subject_id,
        expires_in=_format_remaining(credential.expires_at, now),
    )


def credential_from_portal_url(url: str) -> Result[BearerCredential]:
    """
    Extract the apiKey from a Portal XML link copied out of the browser.

    Expected shape:
      https://cfe.sefaz.ce.gov.br:8443/portalcfews/nfce/fiscal-coupons/xml/{protocol}?chaveAcesso=...&apiKey=...
    """
    parts = urlsplit(url.strip())
    if parts.hostname != PORTAL_HOST:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"URL is not a Portal link (expected host {PORTAL_HOST})",
        )

    api_keys = parse_qs(parts.query).get("apiKey")
    if not api_keys:
        return Result.failure(ErrorCode.VALIDATION_ERROR, "URL has no apiKey parameter")

    return parse_bearer_credential(api_keys[0], require_subject=True)
