"""
Unit tests for the main module — composition root and settings.

Tests verify structlog configuration and the wiring logic without making
real HTTP calls or database connections.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import structlog

from nfce_retrieval.adapters.storage import FilesystemBlobStore
from nfce_retrieval.config import AppSettings, DatabaseSettings
from nfce_retrieval.domain.models import Environment
from nfce_retrieval.main import configure_structlog, create_application


class TestConfigureStructlog:
    @pytest.mark.parametrize("level", ["WARNING", "INFO", "NONEXISTENT"])
    def test_configures_without_error(self, level: str) -> None:
        """
        GIVEN any log level string (unknown ones fall back to INFO)
        WHEN configure_structlog is called
        THEN structlog is configured and a logger can be obtained.
        """
        configure_structlog(level)

        assert structlog.get_logger() is not None


class TestSettings:
    def test_nested_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE__DSN", "postgresql://u:p@db:5432/nfce")
        monkeypatch.setenv("AUTHORITY__ENVIRONMENT", "staging")
        monkeypatch.setenv("PORTAL__MAX_PERIOD_DAYS", "31")
        monkeypatch.setenv("SCHEDULER__MAX_CONCURRENT_SESSIONS", "2")

        settings = AppSettings(_env_file=None)  # type: ignore[call-arg]

        assert settings.database.get_dsn() == "postgresql://u:p@db:5432/nfce"
        assert settings.authority.environment is Environment.STAGING
        assert settings.authority.url_for(Environment.STAGING) == settings.authority.staging_url
        assert settings.portal.max_period_days == 31
        assert settings.scheduler.max_concurrent_sessions == 2
        assert settings.authority.verify_server_certificate is False

    def test_dsn_built_from_components(self) -> None:
        database = DatabaseSettings(host="db", name="nfce", username="u", password="p")  # type: ignore[arg-type]

        assert database.get_dsn() == "postgresql://u:p@db:5432/nfce"

    def test_missing_database_components(self) -> None:
        with pytest.raises(ValueError, match="DATABASE__HOST"):
            DatabaseSettings(name="nfce", username="u", password="p")  # type: ignore[arg-type]


class TestCreateApplication:
    def test_wires_services(self, tmp_path: Path) -> None:
        settings = AppSettings(
            _env_file=None,  # type: ignore[call-arg]
            database=DatabaseSettings(dsn="postgresql://u:p@localhost/nfce"),  # type: ignore[arg-type]
            storage={"root": tmp_path},
            scheduler={"max_concurrent_sessions": 3},
            portal={"max_period_days": 7},
        )

        application = create_application(settings)

        assert isinstance(application.blob_store, FilesystemBlobStore)
        assert application.blob_store.root == tmp_path.resolve()
        assert application.scheduler.max_concurrent_sessions == 3
        assert application.period_search.max_period_days == 7
        assert not application.scheduler.running
