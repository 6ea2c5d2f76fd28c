from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECIPE_BOOK_")

    database_url: str = "sqlite+aiosqlite:///./recipes.db"
    echo_sql: bool = False
    sqlite_busy_timeout: float = 30
    # seconds a transaction may run before it is aborted
    transaction_timeout: float = 5.0
    rating_transaction_timeout: float = 3.0
    log_level: str = "INFO"


settings = Settings()
