from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    PORT: int = 3003
    DB_PATH: str = "/data/formrunner.db"
    LOG_LEVEL: str = "info"

    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"

    GENERATION_TIMEOUT_SECONDS: float = 90.0
    FETCH_TIMEOUT_SECONDS: float = 15.0
    SUBMIT_TIMEOUT_SECONDS: float = 20.0
    PREVIEW_MAX_COUNT: int = 10


settings = Settings()
