"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AccountingApiContract(BaseModel):
    """
    Versioned path contract for the Kledo finance API.

    Resolved once from configuration. Paths are relative to
    ``kledo_api_base_url``; ``{invoice_id}`` is substituted for payments.
    """

    version: str = "v1"
    contacts_path: str = "/finance/contacts"
    contact_groups_path: str = "/finance/contactGroups"
    finance_accounts_path: str = "/finance/accounts"
    invoices_path: str = "/finance/invoices"
    invoice_payments_path: str = "/finance/invoices/{invoice_id}/payments"
    profile_path: str = "/user"
    app_header: str = "finance"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Kledo OAuth2
    kledo_client_id: str = Field(default="", description="Kledo OAuth2 client ID")
    kledo_client_secret: str = Field(default="", description="Kledo OAuth2 client secret")
    kledo_redirect_uri: str = Field(
        default="http://localhost:8000/oauth/callback",
        description="OAuth2 redirect URI",
    )
    kledo_auth_base_url: str = Field(
        default="https://app.kledo.com",
        description="Host serving /oauth/authorize",
    )
    kledo_api_base_url: str = Field(
        default="https://app.kledo.com/api/v1",
        description="Kledo REST API base URL (token endpoint lives under it)",
    )
    kledo_scope: str = Field(default="", description="OAuth2 scope (Kledo uses none)")

    # Kledo API contract
    kledo_api_version: str = Field(default="v1", description="API contract version")
    kledo_contacts_path: str = Field(default="/finance/contacts")
    kledo_contact_groups_path: str = Field(default="/finance/contactGroups")
    kledo_finance_accounts_path: str = Field(default="/finance/accounts")
    kledo_invoices_path: str = Field(default="/finance/invoices")
    kledo_invoice_payments_path: str = Field(default="/finance/invoices/{invoice_id}/payments")
    kledo_profile_path: str = Field(default="/user")

    # Xendit
    xendit_secret_key: str = Field(default="", description="Xendit secret API key")
    xendit_api_base_url: str = Field(
        default="https://api.xendit.co", description="Xendit API base URL"
    )
    xendit_webhook_token: str = Field(
        default="", description="Shared secret sent in X-Callback-Token"
    )

    # Security
    session_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="Secret used to sign the OAuth state cookie",
    )
    session_algorithm: str = Field(default="HS256", description="State cookie JWT algorithm")
    oauth_state_ttl_seconds: int = Field(default=600, ge=60, description="State cookie lifetime")
    cookie_secure: bool = Field(default=False, description="Mark cookies Secure (HTTPS only)")

    # Dashboard
    dashboard_url: str = Field(
        default="http://localhost:3000", description="Where OAuth callbacks land the browser"
    )

    # Database
    db_path: str = Field(default="./data/ledgerbridge.duckdb", description="DuckDB file path")

    # Outbound HTTP
    http_timeout_seconds: float = Field(
        default=20.0, ge=1.0, le=120.0, description="Per-call timeout for external APIs"
    )
    http_max_attempts: int = Field(
        default=3, ge=1, le=6, description="Attempts for idempotent GET requests"
    )
    http_backoff_seconds: float = Field(
        default=0.5, ge=0.0, description="Base delay for exponential backoff"
    )

    # Sync
    sync_batch_limit: int = Field(
        default=25, ge=1, le=100, description="Transactions fetched by the manual trigger"
    )
    invoice_due_days: int = Field(default=30, ge=0, description="Invoice due date offset")
    default_contact_group_name: str = Field(
        default="Customers", description="Group created when none exists"
    )
    default_contact_name: str = Field(
        default="Xendit Customer", description="Contact used when a payer has no email"
    )

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def kledo_authorize_url(self) -> str:
        """Construct Kledo authorization URL."""
        return f"{self.kledo_auth_base_url.rstrip('/')}/oauth/authorize"

    @property
    def kledo_token_url(self) -> str:
        """Construct Kledo token URL."""
        return f"{self.kledo_api_base_url.rstrip('/')}/oauth/token"

    @property
    def accounting_contract(self) -> AccountingApiContract:
        """Build the accounting API path contract."""
        return AccountingApiContract(
            version=self.kledo_api_version,
            contacts_path=self.kledo_contacts_path,
            contact_groups_path=self.kledo_contact_groups_path,
            finance_accounts_path=self.kledo_finance_accounts_path,
            invoices_path=self.kledo_invoices_path,
            invoice_payments_path=self.kledo_invoice_payments_path,
            profile_path=self.kledo_profile_path,
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
