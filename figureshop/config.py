"""
Figureshop service configuration.
"""
from pathlib import Path
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


def find_env_file() -> str:
    """Find .env file - check local dir, then project root."""
    local_env = Path(".env")
    root_env = Path("../.env")

    if local_env.exists():
        return str(local_env)
    elif root_env.exists():
        return str(root_env)
    return ".env"  # default


class Settings(BaseSettings):
    """Service settings from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "info"
    log_path: str = ""  # e.g. /app/logs/figureshop.log

    # Version
    version: str = "1.0.0"

    # Storage
    orders_dir: str = "orders"
    artifacts_dir: str = "artifacts"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300  # seconds
    currency: str = "usd"
    unit_price: int = 500  # minor units, per artifact
    product_name: str = "Custom Action Figure"
    allowed_countries: List[str] = ["US", "CA"]
    public_base_url: str = "http://localhost:3000"

    # Email
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_timeout: float = 30.0
    email_username: str = ""
    email_password: str = ""
    email_from: str = ""
    operator_email: str = "orders@example.com"

    # OpenAI
    openai_api_key: str = ""
    openai_vision_model: str = "gpt-4-turbo"
    openai_image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    images_per_request: int = 1

    # Uploads
    max_upload_bytes: int = 10 * 1024 * 1024

    class Config:
        env_file = find_env_file()
        env_file_encoding = "utf-8"
        env_prefix = ""
        case_sensitive = False
        extra = "ignore"

    @property
    def is_stripe_configured(self) -> bool:
        """Check if Stripe is properly configured"""
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @property
    def is_email_configured(self) -> bool:
        """Check if SMTP delivery is properly configured"""
        return bool(self.email_username and self.email_password)

    @property
    def is_openai_configured(self) -> bool:
        """Check if OpenAI is properly configured"""
        return bool(self.openai_api_key)

    @property
    def sender_address(self) -> str:
        return self.email_from or self.email_username

    def validate_required_config(self) -> list:
        """Validate that required configuration is present"""
        errors = []

        if not self.stripe_secret_key:
            errors.append("STRIPE_SECRET_KEY is required")

        if not self.stripe_webhook_secret:
            errors.append("STRIPE_WEBHOOK_SECRET is required")

        if not self.email_username:
            errors.append("EMAIL_USERNAME is required")

        if not self.email_password:
            errors.append("EMAIL_PASSWORD is required")

        if not self.openai_api_key:
            errors.append("OPENAI_API_KEY is required")

        if self.unit_price <= 0:
            errors.append("UNIT_PRICE must be positive")

        return errors

    def get_config_summary(self) -> dict:
        """Get a summary of configuration (without sensitive data)"""
        return {
            "version": self.version,
            "orders_dir": self.orders_dir,
            "artifacts_dir": self.artifacts_dir,
            "currency": self.currency,
            "unit_price": self.unit_price,
            "allowed_countries": self.allowed_countries,
            "public_base_url": self.public_base_url,
            "smtp_server": self.smtp_server,
            "smtp_port": self.smtp_port,
            "operator_email": self.operator_email,
            "openai_vision_model": self.openai_vision_model,
            "openai_image_model": self.openai_image_model,
            "stripe_configured": self.is_stripe_configured,
            "email_configured": self.is_email_configured,
            "openai_configured": self.is_openai_configured,
            "debug": self.debug,
            "log_level": self.log_level,
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
