"""
Access key parsing — single keys and uploaded key lists.

Uploaded lists are spreadsheet exports: one key per line in the first
column, optionally preceded by a header row and wrapped in quotes.
"""

from __future__ import annotations

import re

import structlog

from nfce_retrieval.domain.failure import ErrorCode
from nfce_retrieval.domain.models import DocumentKey, is_valid_access_key
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

_COLUMN_SEPARATOR = re.compile(r"[,;]")


def parse_access_key(raw: str) -> Result[DocumentKey]:
    """Validate and wrap a raw key; failure code INVALID_ACCESS_KEY."""
    if not is_valid_access_key(raw):
        return Result.failure(
            ErrorCode.INVALID_ACCESS_KEY,
            f"Invalid access key {raw.strip()!r} (length {len(raw.strip())}): expected 44 digits",
        )
    return Result.success(DocumentKey.parse(raw))


def _first_column(line: str) -> str:
    return _COLUMN_SEPARATOR.split(line, maxsplit=1)[0].replace('"', "").strip()


def extract_access_keys(content: str) -> list[str]:
    """
    Pull valid access keys out of an uploaded list, keeping input order.

    The first non-blank line is treated as a header when it is not itself a
    valid key. Invalid entries are dropped and logged.
    """
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return []

    has_header = not is_valid_access_key(_first_column(lines[0]))
    data_lines = lines[1:] if has_header else lines

    keys: list[str] = []
    for line in data_lines:
        candidate = _first_column(line)
        if not candidate:
            continue
        if not is_valid_access_key(candidate):
            log.warning("keys.invalid_entry", value=candidate, length=len(candidate))
            continue
        keys.append(candidate)

    log.info(
        "keys.extracted",
        lines=len(lines),
        has_header=has_header,
        valid_keys=len(keys),
    )
    return keys
