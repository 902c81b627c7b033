"""
Configuration management using Pydantic Settings.

Process-level settings are loaded from environment variables with sensible
defaults. Use a .env file for local development. Retrieval behaviour that can
change at runtime (chunking, search, embedding provider) lives in the
persisted RAG configuration instead, see `cortexflow.retrieval.rag_config`.

Environment Variables:
    CORTEXFLOW_DATA_DIR: Directory holding the retrieval database
    RAG_DB_FILENAME: SQLite file name inside the data directory
    OPENAI_API_KEY: Fallback key for the openai embedding provider
    VOYAGE_API_KEY: Fallback key for the voyage embedding provider
    COHERE_API_KEY: Fallback key for the cohere embedding provider
    EMBEDDING_TIMEOUT: Default timeout (seconds) for remote embedding calls
    LOCAL_EMBEDDING_DEVICE: Device for the local sentence-transformers model
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Storage
    # ==========================================================================
    data_dir: Path = Field(
        default=Path.home() / ".cortexflow" / "data",
        validation_alias=AliasChoices("CORTEXFLOW_DATA_DIR", "DATA_DIR"),
        description="Root directory for retrieval data files",
    )
    rag_db_filename: str = Field(
        default="rag.sqlite",
        description="SQLite database file name inside data_dir",
    )

    # ==========================================================================
    # Embedding provider credentials (optional)
    # ==========================================================================
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        description="OpenAI API key used when the RAG config has none",
    )
    voyage_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Voyage AI API key used when the RAG config has none",
    )
    cohere_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Cohere API key used when the RAG config has none",
    )

    # ==========================================================================
    # Embedding runtime
    # ==========================================================================
    embedding_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=120.0,
        description="Default timeout in seconds for remote embedding requests",
    )
    local_embedding_device: Optional[str] = Field(
        default=None,
        description="Device for local embeddings (cpu, cuda, mps). Auto-detected if unset",
    )

    # ==========================================================================
    # Observability
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # ==========================================================================
    # Validators
    # ==========================================================================
    @field_validator("data_dir")
    @classmethod
    def resolve_path(cls, v: Path) -> Path:
        """Expand and resolve the data directory to an absolute path."""
        return v.expanduser().resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def rag_db_path(self) -> Path:
        """Full path of the retrieval database file."""
        return self.data_dir / self.rag_db_filename

    def api_key_for(self, provider: str) -> Optional[str]:
        """
        Get the environment API key for a remote embedding provider.

        Args:
            provider: Provider name (openai, voyage, cohere)

        Returns:
            The secret value, or None when not configured
        """
        secret = getattr(self, f"{provider}_api_key", None)
        if secret:
            return secret.get_secret_value()
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    Call `get_settings.cache_clear()` to reload settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience alias
settings = get_settings()
