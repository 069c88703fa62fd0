from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Engine
    ENGINE_ENABLE_CACHING: bool = True
    ENGINE_STRICT_VALIDATION: bool = False
    ENGINE_TIMEOUT_MS: int = 30000
    ENGINE_MAX_CACHE_SIZE: int = 1000

    # Payments
    MAX_PAYMENT_AMOUNT: float = 100000.00
    MAX_INSTALLMENT_PERIODS: int = 60
    DEFAULT_PAYMENT_METHOD: str = "Cash"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
