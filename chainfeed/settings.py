import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Blockfrost Configuration
    blockfrost_project_id: str = Field(default="", alias="BLOCKFROST_PROJECT_ID")
    blockfrost_base_url: str | None = Field(default=None, alias="BLOCKFROST_BASE_URL")

    # CoinGecko Configuration
    coingecko_api_key: str = Field(default="", alias="COINGECKO_API_KEY")
    coingecko_pro: bool = Field(default=False, alias="COINGECKO_PRO")

    # Cache Configuration (seconds)
    cache_default_ttl: float = Field(default=300.0, alias="CACHE_DEFAULT_TTL")
    cache_max_size: int = Field(default=1000, alias="CACHE_MAX_SIZE")
    cache_cleanup_interval: float = Field(default=60.0, alias="CACHE_CLEANUP_INTERVAL")

    # Request Configuration
    request_timeout: float = Field(default=10.0, alias="REQUEST_TIMEOUT")
    max_retries: int = Field(default=0, alias="MAX_RETRIES")
    retry_delay: float = Field(default=1.0, alias="RETRY_DELAY")

    # Health Check Configuration
    health_check_enabled: bool = Field(default=True, alias="HEALTH_CHECK_ENABLED")
    health_check_interval: int = Field(default=300, alias="HEALTH_CHECK_INTERVAL")

    # Field priority table
    field_priorities_path: str | None = Field(default=None, alias="FIELD_PRIORITIES_PATH")

    @classmethod
    def from_env(cls) -> "Settings":
        """Settings read from the process environment (after .env is loaded)."""
        return cls.model_validate(dict(os.environ))


global_settings = Settings.from_env()
