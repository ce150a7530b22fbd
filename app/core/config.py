from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./analyses.db"
    DATABASE_ECHO: bool = False
    RUN_MIGRATIONS_ON_STARTUP: bool = True

    # Warehouses the service may query: {"datasource id": "sqlalchemy url"}
    DATASOURCES: Dict[str, str] = {}

    QUERY_POLL_INTERVAL_SECONDS: float = 5.0
    QUERY_POLL_TIMEOUT_SECONDS: float = 3600.0
    QUERY_MAX_ROWS: int = 10000
    TEST_QUERY_LIMIT: int = 5

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
