import logging
from typing import Dict, List
from urllib.parse import quote_plus
from google.cloud import secretmanager
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def get_secret(project_id: str, secret_id: str, version_id: str = "latest") -> str:
    try:
        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project_id}/secrets/{secret_id}/versions/{version_id}"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.warning(f"Could not fetch secret {secret_id}: {e}")
        return ""


class Settings(BaseSettings):
    # Bootstrapping Variable. When empty, everything comes from the environment.
    PROJECT_ID: str = ""

    DB_HOST: str = ""
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_NAME: str = "postgres"
    DATABASE_URL: str = ""

    STRIPE_API_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE: int = 300

    # Plan id -> Stripe price id, e.g. PLAN_PRICES='{"premium": "price_123"}'
    PLAN_PRICES: Dict[str, str] = {}
    TRIAL_PERIOD_DAYS: int = 14

    SITE_URL: str = "http://localhost:3000"
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    ENABLE_TRACING: bool = False

    def load_secrets(self):
        if not self.PROJECT_ID:
            logger.info("PROJECT_ID not set, skipping Secret Manager.")
        else:
            db_host_secret = get_secret(self.PROJECT_ID, "DB_HOST")
            if db_host_secret: self.DB_HOST = db_host_secret

            db_user_secret = get_secret(self.PROJECT_ID, "DB_USER")
            if db_user_secret: self.DB_USER = db_user_secret

            db_name_secret = get_secret(self.PROJECT_ID, "DB_NAME")
            if db_name_secret: self.DB_NAME = db_name_secret

            site_url_secret = get_secret(self.PROJECT_ID, "SITE_URL")
            if site_url_secret: self.SITE_URL = site_url_secret

            # Fetch Secrets
            self.DB_PASSWORD = get_secret(self.PROJECT_ID, "DB_PASSWORD") or self.DB_PASSWORD
            self.STRIPE_API_KEY = get_secret(self.PROJECT_ID, "STRIPE_API_KEY") or self.STRIPE_API_KEY
            self.STRIPE_WEBHOOK_SECRET = (
                get_secret(self.PROJECT_ID, "STRIPE_WEBHOOK_SECRET") or self.STRIPE_WEBHOOK_SECRET
            )

            db_url_secret = get_secret(self.PROJECT_ID, "DATABASE_URL")
            if db_url_secret:
                self.DATABASE_URL = db_url_secret

        if not self.DATABASE_URL:
            # Fallback: construct it
            if self.DB_HOST and self.DB_PASSWORD:
                self.DATABASE_URL = f"postgresql://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}@{self.DB_HOST}:5432/{self.DB_NAME}"
            else:
                self.DATABASE_URL = "sqlite:///./billing.db"

    @property
    def portal_return_url(self) -> str:
        return self.SITE_URL.rstrip("/") + "/dashboard"


settings = Settings()
settings.load_secrets()
