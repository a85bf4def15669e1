"""
Configuration settings for the Market Snapshot Service

Values are read from environment variables and an optional .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # PostgreSQL Configuration
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "snapshots"
    POSTGRES_PASSWORD: str = "snapshots"
    POSTGRES_DB: str = "market_snapshots"
    POSTGRES_POOL_MIN_SIZE: int = 1
    POSTGRES_POOL_MAX_SIZE: int = 10
    POSTGRES_SSL_MODE: str = "disable"
    POSTGRES_APPLICATION_NAME: str = "market_snapshot_service"
    POSTGRES_CONNECT_RETRIES: int = 5

    # Use the in-process document store instead of PostgreSQL (local development)
    USE_MEMORY_STORE: bool = False

    # Collections
    MARKET_COLLECTION: str = "market_data"
    FUNDING_RATE_COLLECTION: str = "funding_rates"

    # Scheduling
    SCHEDULER_ENABLED: bool = True
    COLLECTION_INTERVAL_SECONDS: float = 1800.0  # 30 minutes
    COLLECT_ON_STARTUP: bool = True
    COLLECTION_MODE: str = "upsert"  # "upsert" or "historical"

    # Timeouts
    FETCH_TIMEOUT_SECONDS: float = 10.0
    STORAGE_TIMEOUT_SECONDS: float = 30.0

    # Codec
    CODEC_STRICT: bool = False  # raise instead of falling back to zero on malformed bigints
    CODEC_SAFE_INTEGER_LIMIT: int = 2**53 - 1

    # Market data source (generic REST adapter)
    SOURCE_TAG: str = "drift"
    SOURCE_API_URL: str = "https://data.api.drift.trade"
    SOURCE_ENTITIES_PATH: str = "/contracts"
    SOURCE_ENTITIES_FIELD: str = "contracts"
    SOURCE_ENTITY_KEY_FIELD: str = "ticker_id"
    SOURCE_DETAIL_PATH: str = "/fundingRates?marketName={key}"
    SOURCE_DETAIL_FIELD: str = "fundingRates"
    SOURCE_MAX_RETRIES: int = 3
    SOURCE_RETRY_DELAY: float = 1.0  # seconds, doubled per attempt
    SOURCE_KIND: str = "funding_rates"  # "market" -> MARKET_COLLECTION, "funding_rates" -> FUNDING_RATE_COLLECTION

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8010

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Service Configuration
    SERVICE_NAME: str = "market_snapshot_service"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def POSTGRES_DSN(self) -> str:
        """Build the PostgreSQL DSN using current configuration."""
        base = (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )
        params = []
        if self.POSTGRES_SSL_MODE and self.POSTGRES_SSL_MODE.lower() != "disable":
            params.append(f"sslmode={self.POSTGRES_SSL_MODE}")
        if self.POSTGRES_APPLICATION_NAME:
            params.append(f"application_name={self.POSTGRES_APPLICATION_NAME}")
        if params:
            return f"{base}?{'&'.join(params)}"
        return base


# Create settings instance
settings = Settings()
