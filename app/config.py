import warnings
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Known insecure default keys (must never be used in production) ──
_INSECURE_KEYS = {
    "change_this",
    "change_this_refresh",
    "change_this_to_a_secure_random_string",
    "secret",
}


class Settings(BaseSettings):
    APP_NAME: str = "SalesIntel API"
    APP_ENV: str = "development"
    API_V1_STR: str = "/api/v1"

    # Public base URL of this service, used to build the SP entity ID,
    # the SAML ACS URL and the OIDC redirect URI sent to identity providers.
    API_BASE_URL: str = "http://localhost:8000"

    # ── Application tokens ──
    SECRET_KEY: str = "change_this"
    REFRESH_SECRET_KEY: str = "change_this_refresh"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # CORS
    BACKEND_CORS_ORIGINS: str = ""

    # Database
    DATABASE_URL: Optional[str] = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "salesintel"
    DB_ECHO: bool = False

    # Redis (SSO handshake state)
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # SSO
    SSO_STATE_TTL_SECONDS: int = 10 * 60
    SSO_HTTP_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Block startup if critical secrets are insecure in production / staging."""
        if self.APP_ENV in ("production", "staging"):
            for name in ("SECRET_KEY", "REFRESH_SECRET_KEY"):
                value = getattr(self, name)
                if value in _INSECURE_KEYS or len(value) < 32:
                    raise ValueError(
                        f"{name} is insecure ('{value[:8]}…'). "
                        "Set a strong random key (≥ 32 chars) in .env or environment."
                    )
            if self.SECRET_KEY == self.REFRESH_SECRET_KEY:
                raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
            if not self.DATABASE_URL and self.POSTGRES_PASSWORD in ("postgres", ""):
                raise ValueError(
                    "POSTGRES_PASSWORD is set to default 'postgres'. "
                    "Set a strong password in .env or environment."
                )
            if self.API_BASE_URL.startswith("http://"):
                warnings.warn(
                    "API_BASE_URL is not HTTPS; identity providers will post "
                    "assertions over plain HTTP.",
                    UserWarning,
                    stacklevel=2,
                )
        return self

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"
        )

    @property
    def REDIS_DSN(self) -> str:
        if self.REDIS_URL:
            return self.REDIS_URL
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def sso_base_url(self) -> str:
        return f"{self.API_BASE_URL.rstrip('/')}{self.API_V1_STR}/sso"

    @property
    def saml_sp_entity_id(self) -> str:
        return f"{self.sso_base_url}/saml/metadata"

    @property
    def saml_acs_url(self) -> str:
        return f"{self.sso_base_url}/saml/callback"

    @property
    def oidc_redirect_uri(self) -> str:
        return f"{self.sso_base_url}/oidc/callback"

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_staging(self) -> bool:
        return self.APP_ENV == "staging"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

settings = Settings()
