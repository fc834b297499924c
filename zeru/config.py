"""Settings via pydantic-settings with ZERU_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zeru.storage.models import EMBEDDING_DIMENSIONS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ZERU_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("zeru", validation_alias="DB_USER")
    db_password: str = Field("zeru_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("zeru", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # AI provider (default credentials when no per-tenant resolver is wired)
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    api_base_url: str = "https://api.openai.com/v1"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    model: str = "gpt-5-mini"
    reasoning_effort: Literal["minimal", "low", "medium", "high"] = "medium"

    # Internal services (accounting tools, attachments and skills are disabled when unset)
    accounting_api_url: str = ""
    files_api_url: str = ""
    skills_api_url: str = ""
    internal_api_timeout: float = 30.0  # seconds

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = EMBEDDING_DIMENSIONS  # Fixed by the agent.memories.embedding column
    embedding_client_cache_size: int = 32

    # Agent loop
    max_iterations: int = 10  # Max upstream turns per incoming message
    memory_context_limit: int = 8
    memory_search_tool_limit: int = 6

    # Background jobs
    job_max_concurrency: int = 3
    job_max_retries: int = 3
    job_base_delay: float = 1.0  # seconds; retry n waits base * 4**n

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.job_max_concurrency < 1:
            raise ValueError("job_max_concurrency must be >= 1")
        if self.job_max_retries < 0:
            raise ValueError("job_max_retries must be >= 0")
        if self.embedding_client_cache_size < 1:
            raise ValueError("embedding_client_cache_size must be >= 1")
        if self.embedding_dimensions != EMBEDDING_DIMENSIONS:
            raise ValueError(
                f"embedding_dimensions must be {EMBEDDING_DIMENSIONS} to match the memories vector column, "
                f"got {self.embedding_dimensions}"
            )
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
