"""
Application settings
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/mailhooks.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    DATA_DIR: str = "./data"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Token encryption (Fernet key, urlsafe base64, 32 bytes)
    TOKEN_ENCRYPTION_KEY: str = ""
    TOKEN_REFRESH_SKEW_SECONDS: int = 300

    # OAuth clients
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"
    MICROSOFT_TOKEN_URL: str = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

    # Gmail watch + Pub/Sub
    GOOGLE_CLOUD_PROJECT: str = ""
    GMAIL_WEBHOOK_URL: str = "http://localhost:8000/api/webhooks/gmail"
    GMAIL_LABEL_IDS: List[str] = ["INBOX"]
    GMAIL_REWATCH_INTERVAL_HOURS: int = 24

    # Outlook / Microsoft Graph
    GRAPH_API_URL: str = "https://graph.microsoft.com/v1.0"
    OUTLOOK_WEBHOOK_URL: str = "http://localhost:8000/api/webhooks/outlook"
    OUTLOOK_SUBSCRIPTION_HOURS: int = 72
    OUTLOOK_RENEWAL_WINDOW_HOURS: int = 12
    OUTLOOK_CHANGE_TYPES: str = "created,updated"
    OUTLOOK_RESOURCE: str = "/me/messages"

    # Every provider call carries this timeout
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Reconciliation
    ENABLE_SCHEDULER: bool = False
    RECONCILE_INTERVAL_SECONDS: int = 3600
    CLEANUP_INTERVAL_SECONDS: int = 86400
    RECONCILE_ACCOUNT_DELAY_SECONDS: float = 1.5
    VALIDATE_INTERVAL_HOURS: int = 6
    CREDENTIAL_FAILURE_ALERT_TICKS: int = 3

    # Webhook receive path
    WEBHOOK_INLINE_DISPATCH: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def microsoft_token_url(self) -> str:
        return self.MICROSOFT_TOKEN_URL.format(tenant=self.MICROSOFT_TENANT)


settings = Settings()
