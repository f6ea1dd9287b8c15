"""
Application configuration from environment variables.
"""
from functools import lru_cache
from pathlib import Path
from pydantic_settings import BaseSettings

# .env is in the project root (parent of backend/)
ENV_FILE = Path(__file__).parent.parent / ".env"


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""  # anon key, used to verify bearer tokens
    supabase_service_key: str = ""  # service key for admin ops

    # Stripe (invoice mirror)
    stripe_secret_key: str = ""
    stripe_api_version: str = "2024-06-20"

    # Comma-separated list of privileged operator emails
    super_admin_emails: str = ""

    # Client portal
    usage_default_days: int = 30
    usage_max_events: int = 500
    portal_invoice_limit: int = 50

    # App settings
    app_url: str = "http://localhost:8000"
    debug: bool = True

    class Config:
        env_file = str(ENV_FILE)
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
