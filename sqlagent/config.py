from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_KEY: str | None = None
    AZURE_OPENAI_DEPLOYMENT: str = "gpt-4o"
    AZURE_OPENAI_API_VERSION: str = "2025-01-01-preview"

    # Database the agent inspects and queries
    DATABASE_URL: str | None = None

    # LangGraph checkpoints (sqlite file); must survive restarts for resume to work
    CHECKPOINT_DB_PATH: str = ".run/graph.db"
    # Session leases and the database each session is bound to
    SESSION_DB_URL: str = "sqlite:///.run/sessions.db"
    # A lease older than this is treated as abandoned by a crashed worker
    SESSION_LEASE_TTL_SECONDS: int = 10 * 60

    SQL_TOP_K: int = 5
    SQL_SAMPLE_ROWS: int = 3
    CONNECTION_TTL_SECONDS: int = 30 * 60
    MAX_GRAPH_STEPS: int = 25

    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "local"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def use_azure(self) -> bool:
        return bool(self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_API_KEY)


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    return settings
