from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


SANDBOX = "sandbox"
PRODUCTION = "production"

DEFAULT_SCOPES = [
    "com.intuit.quickbooks.accounting",
    "project-management.project",
]

# Accounting REST base URLs per environment (used when QBO_BASE_URL is unset)
ACCOUNTING_BASE_URLS = {
    SANDBOX: "https://sandbox-quickbooks.api.intuit.com",
    PRODUCTION: "https://quickbooks.api.intuit.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # QuickBooks OAuth app credentials
    QBO_CLIENT_ID: str | None = None
    QBO_CLIENT_SECRET: str | None = None
    QBO_REDIRECT_URI: str | None = "http://localhost:8000/callback"
    QBO_ENVIRONMENT: str = SANDBOX
    # Space or comma separated; empty means DEFAULT_SCOPES
    QBO_SCOPES: str = ""

    # QuickBooks APIs
    QBO_BASE_URL: str | None = None
    QBO_GRAPHQL_URL: str = "https://qb.api.intuit.com/graphql"
    QBO_MINOR_VERSION: str = "75"
    QBO_DEEP_LINK_TEMPLATE: str = "https://app.qbo.intuit.com/app/invoice?txnId={invoice_id}&companyId={realm_id}"

    # Outbound HTTP
    HTTP_TIMEOUT: float = 30.0
    HTTP_MAX_ATTEMPTS: int = 3
    HTTP_RETRY_BACKOFF: float = 0.5

    # Browser session
    SESSION_SECRET: str = "development-session-secret-change-me"
    SESSION_COOKIE: str = "qbo_demo_session"
    SESSION_MAX_AGE: int = 3600
    SESSION_COOKIE_SECURE: bool = False

    DEBUG: bool = True

    @field_validator("QBO_ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        """Environment names are matched case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def is_sandbox(self) -> bool:
        return self.QBO_ENVIRONMENT == SANDBOX

    @property
    def accounting_base_url(self) -> str:
        """Base URL of the Accounting REST API, without trailing slash."""
        url = self.QBO_BASE_URL or ACCOUNTING_BASE_URLS.get(
            self.QBO_ENVIRONMENT, ACCOUNTING_BASE_URLS[SANDBOX]
        )
        return url.rstrip("/")

    @property
    def requested_scopes(self) -> list[str]:
        """Configured scopes with blanks removed, or the default pair."""
        scopes = [s for s in (self.QBO_SCOPES or "").replace(",", " ").split() if s]
        return scopes or list(DEFAULT_SCOPES)

    def invoice_deep_link(self, invoice_id: str, realm_id: str) -> str:
        """Build the QuickBooks UI link for an invoice."""
        template = self.QBO_DEEP_LINK_TEMPLATE
        if not template or not template.strip():
            raise ValueError("QBO_DEEP_LINK_TEMPLATE is required to build invoice deep link")
        return template.format(invoice_id=invoice_id, realm_id=realm_id)

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
