from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "retail_core"
    # None = ask the server (replica set / mongos support transactions)
    MONGODB_TRANSACTIONS: Optional[bool] = None

    # Credit terms used when a document carries no due date
    DEFAULT_CUSTOMER_TERMS_DAYS: int = 15
    DEFAULT_SUPPLIER_TERMS_DAYS: int = 30

    # Ledger behaviour
    SETTLEMENT_TOLERANCE: float = 0.01
    RECEIPT_PREFIX: str = "REC-"
    RECEIPT_COUNTER: str = "receiptNumber"
    COST_UPDATE_RETRIES: int = 5
    CONFLICT_RETRIES: int = 1

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env"
    )

settings = Settings()
