"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings so that every endpoint URL, timeout and trust
decision is explicit and injected into the adapters that need it. Nothing
downstream reads the environment on its own.

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__": AUTHORITY__ENVIRONMENT maps
to authority.environment, PORTAL__MAX_PERIOD_DAYS to portal.max_period_days.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nfce_retrieval.domain.models import Environment

_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class AuthoritySettings(BaseModel):
    """
    Legacy SOAP web service (SVRS, used by Ceará) for protocol consultation.

    verify_server_certificate defaults to False: the authority serves a chain
    that standard trust stores do not validate. Stricter deployments set
    AUTHORITY__VERIFY_SERVER_CERTIFICATE=true.
    """

    production_url: str = Field(
        default="https://nfe.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx",
        description="NfeConsultaProtocolo4 endpoint, production",
    )
    staging_url: str = Field(
        default="https://nfe-homologacao.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx",
        description="NfeConsultaProtocolo4 endpoint, homologação",
    )
    environment: Environment = Field(default=Environment.PRODUCTION)
    verify_server_certificate: bool = Field(default=False)

    def url_for(self, environment: Environment) -> str:
        return self.production_url if environment is Environment.PRODUCTION else self.staging_url


class PortalSettings(BaseModel):
    """Portal CFe REST API (document XML and period listing)."""

    base_url: str = Field(
        default="https://cfe.sefaz.ce.gov.br:8443/portalcfews",
        description="Portal API root, without trailing slash",
    )
    page_size: int = Field(default=100, ge=1, le=1000)
    max_period_days: int | None = Field(
        default=None,
        ge=1,
        description="Reject period searches wider than this many days (unset: no limit)",
    )


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection for session progress and download records.

    Accepts either DATABASE__DSN or the individual components; the DSN wins.
    """

    dsn: SecretStr | None = Field(default=None)
    host: str | None = Field(default=None)
    port: int = Field(default=5432, ge=1, le=65535)
    name: str | None = Field(default=None)
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """Build `dsn` from components when it was not given directly."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn
        return self.dsn.get_secret_value()


class StorageSettings(BaseModel):
    """Local directory backing the blob store (downloaded XML, uploads)."""

    root: Path = Field(default=Path("var/blobs"))


class SchedulerSettings(BaseModel):
    """Background execution of download sessions."""

    max_concurrent_sessions: int = Field(
        default=4,
        ge=1,
        description="Sessions run in parallel; keys within a session never do",
    )


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first): environment variables, .env file,
    defaults.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings
    authority: AuthoritySettings = Field(default_factory=AuthoritySettings)
    portal: PortalSettings = Field(default_factory=PortalSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    http_timeout_seconds: float = Field(default=30.0, gt=0)
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
