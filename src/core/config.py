from functools import lru_cache

from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError


class Settings(BaseSettings):

    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str

    AIRTABLE_API_KEY: str
    AIRTABLE_BASE_ID: str
    AIRTABLE_API_URL: str = "https://api.airtable.com"
    AIRTABLE_DONORS_TABLE: str = "Donors"
    AIRTABLE_DONATIONS_TABLE: str = "Donations"
    AIRTABLE_COMMUNICATIONS_TABLE: str = "Communications"

    AWS_REGION: str
    SES_FROM_EMAIL: str
    ORGANIZATION_NAME: str = "Be A Number, International"

    ADMIN_API_TOKEN: str

    RATE_LIMIT_CAPACITY: int = 5
    RATE_LIMIT_PER_SECONDS: float = 1.0
    RATE_LIMIT_TICK_SECONDS: float = 0.1
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 30.0
    STORE_RETRY_ATTEMPTS: int = 3
    HTTP_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except PydanticValidationError as e:
        # Only option names go into the message, never the submitted values.
        names = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ConfigurationError(
            f"Missing or invalid configuration: {', '.join(names)}",
            {"options": names},
        ) from None


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
