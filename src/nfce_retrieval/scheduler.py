"""
Scheduler — background execution of download sessions.

Infrastructure layer — uses APScheduler (3.x) BackgroundScheduler with a
bounded thread pool. Each submitted session becomes a one-off job that
runs immediately (or as soon as a worker is free); sessions run in
parallel, keys inside one session never do.

Job id == session id, so the same session cannot be queued twice while it
is still pending.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeAlias

import structlog
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from nfce_retrieval.domain.models import DownloadSession
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()

SessionJob: TypeAlias = Callable[[], Result[DownloadSession]]


class SessionScheduler:
    """Queue download sessions onto a bounded pool of background workers."""

    def __init__(self, max_concurrent_sessions: int = 4) -> None:
        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=max_concurrent_sessions)},
            job_defaults={"coalesce": False, "max_instances": 1, "misfire_grace_time": None},
            timezone=UTC,
        )
        self._max_concurrent_sessions = max_concurrent_sessions

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def max_concurrent_sessions(self) -> int:
        return self._max_concurrent_sessions

    def start(self) -> None:
        self._scheduler.start()
        log.info("scheduler.started", max_concurrent_sessions=self._max_concurrent_sessions)

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            log.info("scheduler.stopped", waited=wait)

    def submit(self, session_id: str, job: SessionJob) -> bool:
        """
        Queue a session for immediate execution.

        Returns False when a job for the same session id is still pending.
        """

        def _run() -> None:
            result = job()
            if result.is_success():
                session = result.value()
                log.info(
                    "scheduler.session_finished",
                    session_id=session_id,
                    status=session.status.value,
                    processed=session.processed_keys,
                    total=session.total_keys,
                )
            else:
                log.error("scheduler.session_failed", session_id=session_id, failure=str(result.error()))

        if session_id in self.pending_sessions():
            log.warning("scheduler.session_already_queued", session_id=session_id)
            return False
        try:
            self._scheduler.add_job(
                _run,
                trigger=DateTrigger(run_date=datetime.now(UTC)),
                id=session_id,
                name=f"download session {session_id}",
            )
        except ConflictingIdError:
            log.warning("scheduler.session_already_queued", session_id=session_id)
            return False

        log.info("scheduler.session_queued", session_id=session_id)
        return True

    def pending_sessions(self) -> list[str]:
        """Ids of sessions queued but not yet picked up by a worker."""
        return [job.id for job in self._scheduler.get_jobs()]
