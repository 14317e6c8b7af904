"""
Application configuration via Pydantic Settings.

Settings    — raw values from environment variables or a .env file.
RenewalOptions — the validated, immutable option set the engine runs on.
                 Anything unusable raises ConfigurationInvalid at construction
                 so the engine refuses to start instead of limping along.
"""
from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from errors import ConfigurationInvalid

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"

_HOSTNAME_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (List[str])
    before field validators run, so ``a.example.com,b.example.com`` would be
    rejected before the comma-splitting validator sees it.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── ACME account / directory ───────────────────────────────────────────
    ACME_EMAIL: str = ""
    ACME_STAGING: bool = True
    # Overrides the Let's Encrypt presets (e.g. Pebble: https://localhost:14000/dir)
    ACME_DIRECTORY_URL: str = ""
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (local test CAs only)

    # ── Domains & renewal thresholds ───────────────────────────────────────
    MANAGED_DOMAINS: List[str] = []
    RENEW_DAYS_BEFORE_EXPIRY: Optional[float] = 30
    RENEW_DAYS_AFTER_ISSUE: Optional[float] = None

    # ── CSR subject ────────────────────────────────────────────────────────
    CSR_COUNTRY: str = ""
    CSR_STATE: str = ""
    CSR_LOCALITY: str = ""
    CSR_ORGANIZATION: str = ""
    CSR_ORGANIZATIONAL_UNIT: str = ""
    KEY_ALGORITHM: Literal["rsa", "ec"] = "rsa"
    PFX_PASSWORD: str = ""

    # ── Scheduling / polling ───────────────────────────────────────────────
    TICK_INTERVAL_SECONDS: int = 3600
    AUTHZ_POLL_INTERVAL: float = 2.0
    AUTHZ_POLL_TIMEOUT: float = 120.0
    ORDER_POLL_TIMEOUT: float = 120.0

    # ── Storage ────────────────────────────────────────────────────────────
    STORE_BACKEND: Literal["file", "memory"] = "file"
    CERT_STORE_PATH: str = "./certs"
    CHALLENGE_STORE_PATH: str = ""  # empty = challenges kept in memory
    CHALLENGE_TTL_SECONDS: int = 3600

    # ── Challenge responder / hooks ────────────────────────────────────────
    HTTP_CHALLENGE_PORT: int = 80
    HOOKS: List[str] = []

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("MANAGED_DOMAINS", "HOOKS", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("RENEW_DAYS_BEFORE_EXPIRY", "RENEW_DAYS_AFTER_ISSUE", mode="before")
    @classmethod
    def blank_is_unset(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ─── Validated options ────────────────────────────────────────────────────────


class _ValidatedModel(BaseModel):
    """Immutable model whose validation errors surface as ConfigurationInvalid."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise ConfigurationInvalid(_describe(exc)) from exc


class CsrSubject(_ValidatedModel):
    country: str = ""
    state: str = ""
    locality: str = ""
    organization: str = ""
    organizational_unit: str = ""

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        v = v.strip().upper()
        if v and not re.fullmatch(r"[A-Z]{2}", v):
            raise ValueError("country must be a two-letter ISO 3166 code")
        return v

    @field_validator("state", "locality", "organization", "organizational_unit")
    @classmethod
    def validate_length(cls, v: str) -> str:
        v = v.strip()
        # RFC 5280 upper bounds for these attributes
        if len(v) > 64:
            raise ValueError("subject fields are limited to 64 characters")
        return v


class RenewalOptions(_ValidatedModel):
    email: str
    use_staging: bool = True
    domains: Tuple[str, ...]
    time_until_expiry_before_renewal: Optional[timedelta] = None
    time_after_issue_date_before_renewal: Optional[timedelta] = None
    csr: CsrSubject = CsrSubject()
    key_algorithm: Literal["rsa", "ec"] = "rsa"
    pfx_password: str = ""
    directory_url: str = ""

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("a contact email address is required")
        return v

    @field_validator("domains", mode="before")
    @classmethod
    def normalise_domains(cls, v: object) -> object:
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple)):
            # deduplicate, preserve order
            return tuple(dict.fromkeys(str(d).strip().lower().rstrip(".") for d in v))
        return v

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("at least one domain is required")
        for domain in v:
            if domain.startswith("*."):
                raise ValueError(f"{domain}: wildcard names cannot be validated over HTTP-01")
            labels = domain.split(".")
            if len(domain) > 253 or not all(_HOSTNAME_LABEL_RE.match(label) for label in labels):
                raise ValueError(f"{domain!r} is not a valid host name")
        return v

    @model_validator(mode="after")
    def require_threshold(self) -> "RenewalOptions":
        thresholds = (self.time_until_expiry_before_renewal, self.time_after_issue_date_before_renewal)
        if all(t is None for t in thresholds):
            raise ValueError(
                "set time_until_expiry_before_renewal and/or time_after_issue_date_before_renewal"
            )
        if any(t is not None and t <= timedelta(0) for t in thresholds):
            raise ValueError("renewal thresholds must be positive")
        return self

    @property
    def acme_directory(self) -> str:
        if self.directory_url:
            return self.directory_url
        return LETSENCRYPT_STAGING_DIRECTORY if self.use_staging else LETSENCRYPT_DIRECTORY

    @classmethod
    def from_settings(cls, s: Settings, domains: list[str] | None = None) -> "RenewalOptions":
        return cls(
            email=s.ACME_EMAIL,
            use_staging=s.ACME_STAGING,
            domains=tuple(domains or s.MANAGED_DOMAINS),
            time_until_expiry_before_renewal=_days(s.RENEW_DAYS_BEFORE_EXPIRY),
            time_after_issue_date_before_renewal=_days(s.RENEW_DAYS_AFTER_ISSUE),
            csr=CsrSubject(
                country=s.CSR_COUNTRY,
                state=s.CSR_STATE,
                locality=s.CSR_LOCALITY,
                organization=s.CSR_ORGANIZATION,
                organizational_unit=s.CSR_ORGANIZATIONAL_UNIT,
            ),
            key_algorithm=s.KEY_ALGORITHM,
            pfx_password=s.PFX_PASSWORD,
            directory_url=s.ACME_DIRECTORY_URL,
        )


def _days(value: Optional[float]) -> Optional[timedelta]:
    return None if value is None else timedelta(days=value)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "options"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


# Module-level singleton: import and use everywhere.
settings = Settings()
