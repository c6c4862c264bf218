"""
Configuration management using pydantic-settings

Loads configuration from environment variables and .env file
"""

import logging

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: int = Field(default=5432, description="Database port")
    DB_NAME: str = Field(default="crm_db", description="Database name")
    DB_USER: str = Field(default="crm_user", description="Database user")
    DB_PASSWORD: str = Field(default="crm_password", description="Database password")
    DB_POOL_MAX: int = Field(default=10, description="Maximum pooled connections")
    DOCUMENT_TABLE: str = Field(
        default="app.documents",
        description="JSONB table backing the document store"
    )

    # OpenAI Configuration (transcript summaries only)
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    LLM_MODEL: str = Field(
        default="gpt-4o-mini",
        description="OpenAI chat model"
    )

    # Application Settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Workflow Configuration
    DEFAULT_TAX_RATE: float = Field(default=7.0, description="Default quote tax rate (%)")
    QUOTE_VALIDITY_DAYS: int = Field(default=30, description="Days a new quote stays valid")
    REQUIRE_QUOTATION_FOR_CONVERSION: bool = Field(
        default=False,
        description="Conversion approval requests must carry a quotation"
    )
    REMINDER_DEFAULT_DAYS: int = Field(
        default=7,
        description="Days ahead for template reminders without a due date"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance"""
    return settings


def setup_logging(level: str = None):
    """Configure root logging from settings.LOG_LEVEL"""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
