"""
Period search — list every NFC-e the taxpayer emitted in a date range, then
download each one through the batch session contract.

The Portal listing already returns each document's internal id, which the
Portal accepts as the protocol number, so no SOAP consultation is needed on
this path.
"""

from __future__ import annotations

from datetime import date

import structlog

from nfce_retrieval.batch import BatchSessionProcessor
from nfce_retrieval.domain.credential import require_valid_credential
from nfce_retrieval.domain.failure import ErrorCode
from nfce_retrieval.domain.models import BearerCredential, DownloadSession, PortalSearchItem
from nfce_retrieval.domain.ports import PortalGateway
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()


def validate_period(start_date: date, end_date: date, max_period_days: int | None) -> Result[int]:
    """Return the inclusive length of the period in days."""
    if end_date < start_date:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"Period end {end_date.isoformat()} is before start {start_date.isoformat()}",
        )
    days = (end_date - start_date).days + 1
    if max_period_days is not None and days > max_period_days:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"Period of {days} days exceeds the configured maximum of {max_period_days}",
        )
    return Result.success(days)


class PeriodSearchService:
    """Portal period listing + per-item download."""

    def __init__(
        self,
        portal: PortalGateway,
        processor: BatchSessionProcessor,
        page_size: int = 100,
        max_period_days: int | None = None,
    ) -> None:
        self._portal = portal
        self._processor = processor
        self._page_size = page_size
        self._max_period_days = max_period_days

    @property
    def max_period_days(self) -> int | None:
        return self._max_period_days

    def search(
        self,
        start_date: date,
        end_date: date,
        bearer_token: str,
        taxpayer_id: str | None = None,
        start_time: str = "00:00",
        end_time: str = "23:59",
    ) -> Result[list[PortalSearchItem]]:
        """
        All listing items in the period, across pages.

        taxpayer_id defaults to the credential's `sub` claim.
        """
        return (
            require_valid_credential(bearer_token, require_subject=taxpayer_id is None)
            .flat_map(
                lambda credential: validate_period(start_date, end_date, self._max_period_days).map(
                    lambda _days: credential
                )
            )
            .flat_map(
                lambda credential: self._collect_pages(
                    start_date,
                    end_date,
                    credential,
                    taxpayer_id or credential.subject_id or "",
                    start_time,
                    end_time,
                )
            )
        )

    def _collect_pages(
        self,
        start_date: date,
        end_date: date,
        credential: BearerCredential,
        taxpayer_id: str,
        start_time: str,
        end_time: str,
    ) -> Result[list[PortalSearchItem]]:
        items: list[PortalSearchItem] = []
        page = 1
        while True:
            fetched = self._portal.search_by_period(
                start_date,
                end_date,
                taxpayer_id,
                credential.raw_token,
                self._page_size,
                page=page,
                start_time=start_time,
                end_time=end_time,
            )
            if fetched.is_failure():
                return Result.failure_from(fetched.error())

            listing = fetched.value()
            items.extend(listing.items)
            if not listing.items or len(items) >= listing.total:
                break
            page += 1

        log.info(
            "period_search.listed",
            start=start_date.isoformat(),
            end=end_date.isoformat(),
            taxpayer_id=taxpayer_id,
            found=len(items),
            pages=page,
        )
        return Result.success(items)

    def search_and_download(
        self,
        session_id: str,
        start_date: date,
        end_date: date,
        bearer_token: str,
        owner_id: str | None = None,
        taxpayer_id: str | None = None,
        start_time: str = "00:00",
        end_time: str = "23:59",
    ) -> Result[DownloadSession]:
        """
        List the period, then download every item as one session.

        A failed listing still leaves a `failed` session behind so the caller
        can observe the outcome by session id.
        """
        listed = self.search(start_date, end_date, bearer_token, taxpayer_id, start_time, end_time)
        if listed.is_failure():
            return self._processor.abort_session(session_id, owner_id, listed.error())
        return self._processor.process_known_protocols(session_id, listed.value(), bearer_token, owner_id)
