"""
Application entry point — wires dependencies and starts the HTTP service.

Composition root: creates concrete adapters, injects them into the
retriever, batch processor and period search service, and hands the lot to
the ASGI app.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Create concrete adapters (authority, portal, PKCS#12, blob store, repository)
  4. Wire the domain services
  5. Serve the ASGI app with uvicorn
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

import structlog

from nfce_retrieval import __version__
from nfce_retrieval.adapters.authority_client import HttpAuthorityClient
from nfce_retrieval.adapters.pkcs12 import Pkcs12CertificateTransformer
from nfce_retrieval.adapters.portal_client import HttpPortalClient
from nfce_retrieval.adapters.repository import PsycopgDownloadRepository
from nfce_retrieval.adapters.storage import FilesystemBlobStore
from nfce_retrieval.batch import BatchSessionProcessor
from nfce_retrieval.config import AppSettings
from nfce_retrieval.domain.ports import BlobStore, DownloadRepository
from nfce_retrieval.period_search import PeriodSearchService
from nfce_retrieval.retrieval import HybridRetriever
from nfce_retrieval.scheduler import SessionScheduler


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Context variables bound per session (session_id) are merged into every
    event emitted while the session runs.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Application:
    """Fully wired services, shared by the ASGI layer."""

    processor: BatchSessionProcessor
    period_search: PeriodSearchService
    repository: DownloadRepository
    blob_store: BlobStore
    scheduler: SessionScheduler


def create_application(settings: AppSettings) -> Application:
    """Instantiate all concrete adapters and wire the domain services."""
    authority = HttpAuthorityClient(settings.authority, timeout=settings.http_timeout_seconds)
    portal = HttpPortalClient(settings.portal, timeout=settings.http_timeout_seconds)
    repository = PsycopgDownloadRepository(dsn=settings.database.get_dsn())
    blob_store = FilesystemBlobStore(settings.storage.root)

    retriever = HybridRetriever(authority, portal, environment=settings.authority.environment)
    processor = BatchSessionProcessor(
        retriever=retriever,
        repository=repository,
        blob_store=blob_store,
        transformer=Pkcs12CertificateTransformer(),
    )
    period_search = PeriodSearchService(
        portal,
        processor,
        page_size=settings.portal.page_size,
        max_period_days=settings.portal.max_period_days,
    )
    return Application(
        processor=processor,
        period_search=period_search,
        repository=repository,
        blob_store=blob_store,
        scheduler=SessionScheduler(settings.scheduler.max_concurrent_sessions),
    )


def main() -> None:
    """Validate configuration, then serve the ASGI app."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        environment=settings.authority.environment.value,
        max_concurrent_sessions=settings.scheduler.max_concurrent_sessions,
    )

    import uvicorn

    uvicorn.run(
        "nfce_retrieval.asgi:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
