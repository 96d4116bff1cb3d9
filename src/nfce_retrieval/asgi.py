"""
FastAPI + Uvicorn ASGI application.

Runs the retrieval engine as a web service: download sessions and period
searches are accepted over HTTP, queued on the background SessionScheduler
and answered 202; progress is read back from the repository.

Architecture:
  - FastAPI: request validation (pydantic models) and routing
  - Uvicorn: ASGI server (signals, graceful shutdown)
  - APScheduler: session jobs run on a bounded background thread pool
  - K8s probes: /health (scheduler alive) and /ready (startup finished)

Entry point: uvicorn nfce_retrieval.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from nfce_retrieval import __version__
from nfce_retrieval.config import AppSettings
from nfce_retrieval.domain.credential import check_credential, credential_from_portal_url
from nfce_retrieval.domain.failure import ErrorCode, FailureDescription
from nfce_retrieval.domain.models import (
    CredentialCheck,
    DownloadRecord,
    DownloadSession,
)
from nfce_retrieval.main import Application, configure_structlog, create_application
from nfce_retrieval.period_search import validate_period

log = structlog.get_logger()

_TIME_PATTERN = r"^([01][0-9]|2[0-3]):[0-5][0-9]$"


# ─────────────────────── Request models ───────────────────────


class SessionRequest(BaseModel):
    """
    Start a download session from an uploaded key list.

    Keys come either as a list or as the raw text of an uploaded file
    (one key per line, optional header, first CSV/semicolon column).
    """

    session_id: str | None = None
    owner_id: str | None = None
    access_keys: list[str] | None = None
    keys_text: str | None = None
    certificate_base64: str = Field(min_length=1)
    certificate_password: str
    bearer_token: str = Field(min_length=1)

    @model_validator(mode="after")
    def require_keys(self) -> SessionRequest:
        if self.access_keys is None and self.keys_text is None:
            raise ValueError("Provide access_keys or keys_text")
        return self


class PeriodSearchRequest(BaseModel):
    session_id: str | None = None
    owner_id: str | None = None
    start_date: date
    end_date: date
    start_time: str = Field(default="00:00", pattern=_TIME_PATTERN)
    end_time: str = Field(default="23:59", pattern=_TIME_PATTERN)
    taxpayer_id: str | None = None
    bearer_token: str = Field(min_length=1)


class CredentialInspectRequest(BaseModel):
    """Either the bare token or the Portal URL it was copied from."""

    token: str | None = None
    portal_url: str | None = None

    @model_validator(mode="after")
    def require_one(self) -> CredentialInspectRequest:
        if not self.token and not self.portal_url:
            raise ValueError("Provide token or portal_url")
        return self


# ─────────────────────── Serialization ───────────────────────


def session_payload(session: DownloadSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "owner_id": session.owner_id,
        "status": session.status.value,
        "total_keys": session.total_keys,
        "processed_keys": session.processed_keys,
        "success_count": session.success_count,
        "failure_count": session.failure_count,
        "started_at": session.started_at.isoformat(),
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


def record_payload(record: DownloadRecord) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "access_key": record.access_key,
        "status": record.status.value,
        "xml_location": record.xml_location,
        "error_message": record.error_message,
        "downloaded_at": record.downloaded_at.isoformat() if record.downloaded_at else None,
    }


def credential_payload(check: CredentialCheck) -> dict[str, Any]:
    return {
        "valid": check.valid,
        "expires_at": check.expires_at.isoformat() if check.expires_at else None,
        "subject_id": check.subject_id,
        "expires_in": check.expires_in,
        "error": check.error,
    }


def _failure_response(failure: FailureDescription) -> JSONResponse:
    status_code = {
        ErrorCode.SESSION_NOT_FOUND: 404,
        ErrorCode.SESSION_ALREADY_EXISTS: 409,
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.STORAGE_ERROR: 500,
        ErrorCode.DATABASE_ERROR: 500,
    }.get(failure.code, 500)
    return JSONResponse(
        status_code=status_code,
        content={"status": "failed", "error_code": failure.code.value, "message": failure.message},
    )


def _conflict(session_id: str) -> JSONResponse:
    return JSONResponse(status_code=409, content={"status": "conflict", "session_id": session_id})


async def _reject_used_session_id(services: Application, session_id: str) -> JSONResponse | None:
    """409 when the id is queued or already has a stored session; None when it is free."""
    if session_id in services.scheduler.pending_sessions():
        return _conflict(session_id)
    stored = await asyncio.to_thread(services.repository.get_session, session_id)
    if stored.is_success():
        return _conflict(session_id)
    if stored.error().code is not ErrorCode.SESSION_NOT_FOUND:
        return _failure_response(stored.error())
    return None


# ─────────────────────── Application factory ───────────────────────


def create_app(application: Application | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no `application`, settings are loaded and services wired during
    lifespan startup; tests pass a pre-wired Application instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("asgi.startup")
        state = app.state
        if state.application is None:
            try:
                settings = AppSettings()
            except Exception as e:
                state.error_message = f"Configuration error: {e}"
                log.error("asgi.startup_error", error=state.error_message)
                raise
            configure_structlog(settings.log_level)
            state.application = create_application(settings)
            schema = await asyncio.to_thread(state.application.repository.ensure_schema)
            if schema.is_failure():
                state.error_message = f"Database unavailable: {schema.error().message}"
                log.error("asgi.schema_error", error=state.error_message)

        state.application.scheduler.start()
        state.ready = True
        log.info("asgi.startup_complete")

        yield

        log.info("asgi.shutdown", reason="SIGTERM or server stop")
        state.ready = False
        try:
            state.application.scheduler.shutdown(wait=True)
        except Exception as e:
            log.warning("asgi.scheduler_shutdown_error", error=str(e))
        log.info("asgi.shutdown_complete")

    app = FastAPI(
        title="nfce-retrieval",
        description="NFC-e XML retrieval engine: SOAP protocol consultation + Portal download",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.application = application
    app.state.error_message = None
    app.state.ready = False
    _register_routes(app)
    return app


def _services(request: Request) -> Application:
    return request.app.state.application


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness: 200 while the session scheduler is running."""
        state = request.app.state
        if state.error_message:
            log.warning("health.check_failed", error=state.error_message)
            return JSONResponse(status_code=503, content={"status": "unhealthy", "error": state.error_message})
        if state.application is None or not state.application.scheduler.running:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "reason": "scheduler not running"},
            )
        return JSONResponse(status_code=200, content={"status": "healthy", "scheduler_running": True})

    @app.get("/ready")
    async def ready(request: Request) -> JSONResponse:
        state = request.app.state
        if state.error_message:
            return JSONResponse(status_code=503, content={"status": "error", "error": state.error_message})
        if not state.ready:
            return JSONResponse(status_code=202, content={"status": "starting"})
        return JSONResponse(status_code=200, content={"status": "ready"})

    @app.get("/info")
    async def info(request: Request) -> dict[str, Any]:
        application: Application | None = request.app.state.application
        scheduler = application.scheduler if application else None
        return {
            "name": "nfce-retrieval",
            "version": __version__,
            "scheduler_running": bool(scheduler and scheduler.running),
            "max_concurrent_sessions": scheduler.max_concurrent_sessions if scheduler else None,
            "queued_sessions": scheduler.pending_sessions() if scheduler else [],
            "has_error": request.app.state.error_message is not None,
        }

    @app.post("/sessions")
    async def start_session(body: SessionRequest, request: Request) -> JSONResponse:
        """
        Store the uploaded key list and certificate, then queue the session.

        Returns 202 with the session id; precondition failures (unreadable
        certificate, expired credential) surface on the session itself.
        """
        services = _services(request)
        session_id = body.session_id or str(uuid.uuid4())
        try:
            container = base64.b64decode(body.certificate_base64, validate=True)
        except (binascii.Error, ValueError):
            return JSONResponse(
                status_code=400,
                content={
                    "status": "failed",
                    "error_code": ErrorCode.VALIDATION_ERROR.value,
                    "message": "certificate_base64 is not valid base64",
                },
            )

        if body.session_id:
            rejected = await _reject_used_session_id(services, session_id)
            if rejected is not None:
                return rejected

        keys_text = body.keys_text if body.keys_text is not None else "\n".join(body.access_keys or [])
        upload_dir = f"uploads/{body.owner_id or 'anonymous'}/{session_id}/{uuid.uuid4().hex}"
        keys_locator = await asyncio.to_thread(
            services.blob_store.persist_blob, f"{upload_dir}/keys.txt", keys_text.encode("utf-8")
        )
        if keys_locator.is_failure():
            return _failure_response(keys_locator.error())
        certificate_locator = await asyncio.to_thread(
            services.blob_store.persist_blob, f"{upload_dir}/certificate.pfx", container
        )
        if certificate_locator.is_failure():
            return _failure_response(certificate_locator.error())

        queued = services.scheduler.submit(
            session_id,
            lambda: services.processor.process_uploaded_list(
                session_id,
                keys_locator.value(),
                certificate_locator.value(),
                body.certificate_password,
                body.bearer_token,
                body.owner_id,
            ),
        )
        if not queued:
            return _conflict(session_id)
        log.info("sessions.accepted", session_id=session_id, owner_id=body.owner_id)
        return JSONResponse(status_code=202, content={"status": "queued", "session_id": session_id})

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, request: Request) -> JSONResponse:
        services = _services(request)
        result = await asyncio.to_thread(services.repository.get_session, session_id)
        if result.is_success():
            return JSONResponse(status_code=200, content=session_payload(result.value()))
        if result.error().code is ErrorCode.SESSION_NOT_FOUND and session_id in services.scheduler.pending_sessions():
            return JSONResponse(status_code=202, content={"id": session_id, "status": "queued"})
        return _failure_response(result.error())

    @app.get("/sessions/{session_id}/records")
    async def list_records(session_id: str, request: Request) -> JSONResponse:
        services = _services(request)
        result = await asyncio.to_thread(services.repository.list_records, session_id)
        if result.is_failure():
            return _failure_response(result.error())
        return JSONResponse(
            status_code=200,
            content={"session_id": session_id, "records": [record_payload(r) for r in result.value()]},
        )

    @app.post("/period-searches")
    async def start_period_search(body: PeriodSearchRequest, request: Request) -> JSONResponse:
        """Validate the period up front, then queue listing + download as one session."""
        services = _services(request)
        max_days = services.period_search.max_period_days
        period = validate_period(body.start_date, body.end_date, max_days)
        if period.is_failure():
            return _failure_response(period.error())

        session_id = body.session_id or str(uuid.uuid4())
        if body.session_id:
            rejected = await _reject_used_session_id(services, session_id)
            if rejected is not None:
                return rejected
        queued = services.scheduler.submit(
            session_id,
            lambda: services.period_search.search_and_download(
                session_id,
                body.start_date,
                body.end_date,
                body.bearer_token,
                owner_id=body.owner_id,
                taxpayer_id=body.taxpayer_id,
                start_time=body.start_time,
                end_time=body.end_time,
            ),
        )
        if not queued:
            return _conflict(session_id)
        log.info("period_search.accepted", session_id=session_id, days=period.value())
        return JSONResponse(status_code=202, content={"status": "queued", "session_id": session_id})

    @app.post("/credentials/inspect")
    async def inspect_credential(body: CredentialInspectRequest) -> JSONResponse:
        """Decode a bearer token (or the Portal URL carrying it) without verifying its signature."""
        if body.portal_url:
            parsed = credential_from_portal_url(body.portal_url)
            if parsed.is_failure():
                return JSONResponse(
                    status_code=400,
                    content=credential_payload(CredentialCheck(valid=False, error=parsed.error().message)),
                )
            token = parsed.value().raw_token
        else:
            token = body.token or ""
        return JSONResponse(status_code=200, content=credential_payload(check_credential(token)))


app = create_app()


if __name__ == "__main__":
    # For local testing: python -m uvicorn nfce_retrieval.asgi:app --reload
    import uvicorn

    uvicorn.run("nfce_retrieval.asgi:app", host="0.0.0.0", port=8000, reload=False, log_level="info")
