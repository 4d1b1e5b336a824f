"""
Application Configuration
"""
from pydantic_settings import BaseSettings
from decimal import Decimal
from typing import Dict, List
import warnings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "Back-Office API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database
    DATABASE_URL: str = "sqlite:///./backoffice.db"

    # Security
    SECRET_KEY: str = "your-super-secret-key-change-in-production-min-32-chars"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 720  # 12 hours

    # Duplicate submission guard
    SUBMISSION_GUARD_ENABLED: bool = True
    SUBMISSION_GUARD_WINDOW_SECONDS: int = 5

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Currencies
    LOCAL_CURRENCY: str = "XAF"
    FOREIGN_CURRENCIES: str = "USD,EUR,GBP"

    # Cards
    CARD_COUNTRIES: str = "Mali,RDC,France,Congo"
    CARD_DEFAULT_MONTHLY_LIMIT: int = 2000000
    CARD_DEFAULT_RECHARGE_LIMIT: int = 500000
    CARD_FEE_XAF: int = 14000
    CARD_FEE_COUNTRIES: str = "Mali,RDC"

    # Cash accounts
    VAULT_ACCOUNT_TYPE: str = "vault"
    VAULT_ACCOUNT_NAME: str = "Coffre"

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def database_url(self) -> str:
        """Get properly formatted database URL"""
        url = self.DATABASE_URL
        if url.startswith("file:"):
            return f"sqlite:///{url[5:]}"
        return url

    @property
    def foreign_currencies(self) -> List[str]:
        return [c.strip().upper() for c in self.FOREIGN_CURRENCIES.split(",") if c.strip()]

    @property
    def till_currencies(self) -> List[str]:
        return [self.LOCAL_CURRENCY] + self.foreign_currencies

    @property
    def card_countries(self) -> List[str]:
        return [c.strip() for c in self.CARD_COUNTRIES.split(",") if c.strip()]

    @property
    def card_fee_schedule(self) -> Dict[str, Decimal]:
        """Per-card fee for each country; countries outside CARD_FEE_COUNTRIES pay nothing"""
        charged = {c.strip() for c in self.CARD_FEE_COUNTRIES.split(",") if c.strip()}
        return {
            country: Decimal(self.CARD_FEE_XAF) if country in charged else Decimal("0")
            for country in self.card_countries
        }

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def validate_security_settings(self):
        """Validate security settings and warn about insecure defaults"""
        default_keys = [
            "your-super-secret-key-change-in-production-min-32-chars",
            "secret-key",
            "change-me",
        ]

        if self.SECRET_KEY in default_keys:
            if self.is_production:
                raise ValueError(
                    "CRITICAL: Default SECRET_KEY detected in production! "
                    "Set the SECRET_KEY environment variable to a secure random value."
                )
            warnings.warn(
                "WARNING: Using default SECRET_KEY. "
                "Set SECRET_KEY environment variable for production.",
                UserWarning
            )

        if len(self.SECRET_KEY) < 32 and self.is_production:
            raise ValueError(
                "CRITICAL: SECRET_KEY is too short for production! "
                "Use at least 32 characters."
            )

        if self.is_production and self.DEBUG:
            raise ValueError(
                "CRITICAL: DEBUG mode is enabled in production! "
                "Set DEBUG=False for production environment."
            )

        if self.LOCAL_CURRENCY.upper() in self.foreign_currencies:
            raise ValueError("LOCAL_CURRENCY must not be listed in FOREIGN_CURRENCIES")

        return True

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

# Validate security settings on import (but don't crash in development)
try:
    settings.validate_security_settings()
except ValueError as e:
    if settings.is_production:
        raise
    else:
        warnings.warn(str(e), UserWarning)
