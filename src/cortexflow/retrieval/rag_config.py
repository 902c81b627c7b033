"""
Runtime configuration for the retrieval engine.

RAGConfig is a single persisted record with four independently updatable
sections. Updates are partial: each section present in an update is merged
field by field into the stored section, and sections that are absent are
left exactly as they were.

Field names are snake_case; camelCase aliases (``topK``, ``chunkSize``...)
are accepted on input so payloads from JSON collaborators can be passed
through unchanged.
"""

from collections.abc import Mapping
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from cortexflow.exceptions import ConfigError

EmbeddingProviderName = Literal["local", "openai", "voyage", "cohere", "custom"]
ChunkingStrategy = Literal["paragraph", "sentence", "fixed", "semantic"]


class _Section(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class EmbeddingConfig(_Section):
    """Which embedding provider to use and how to reach it."""

    provider: EmbeddingProviderName = Field(
        default="local",
        description="Embedding provider variant",
    )
    model: Optional[str] = Field(
        default=None,
        description="Model name (provider default when unset)",
    )
    api_key: Optional[str] = Field(
        default=None,
        repr=False,
        description="API key (falls back to the provider's environment variable)",
    )
    api_endpoint: Optional[str] = Field(
        default=None,
        description="Endpoint URL (required for the custom provider)",
    )
    dimensions: Optional[int] = Field(
        default=None,
        ge=1,
        description="Override of the provider's default vector dimensionality",
    )
    batch_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Override of the provider's maximum batch size",
    )
    timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Remote request timeout in seconds (EMBEDDING_TIMEOUT when unset)",
    )


class ChunkingConfig(_Section):
    """How document text is split into chunks."""

    strategy: ChunkingStrategy = Field(default="paragraph")
    chunk_size: int = Field(
        default=1000,
        ge=1,
        description="Target chunk size in characters (fixed and sentence strategies)",
    )
    chunk_overlap: int = Field(
        default=200,
        ge=0,
        description="Overlap between consecutive fixed-size windows",
    )
    min_chunk_size: int = Field(
        default=20,
        ge=0,
        description="Chunks shorter than this are merged or dropped",
    )
    max_chunk_size: int = Field(
        default=2000,
        ge=1,
        description="Upper bound for paragraph and semantic chunks",
    )

    @model_validator(mode="after")
    def validate_sizes(self) -> "ChunkingConfig":
        """Ensure overlap is less than chunk size and min does not exceed max."""
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )
        if self.min_chunk_size > self.max_chunk_size:
            raise ValueError(
                f"min_chunk_size ({self.min_chunk_size}) must not exceed "
                f"max_chunk_size ({self.max_chunk_size})"
            )
        return self


class SearchConfig(_Section):
    """Defaults applied to searches that do not override them."""

    top_k: int = Field(default=5, ge=1, le=100)
    min_score: float = Field(default=0.3, ge=-1.0, le=1.0)
    hybrid_vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)


class IndexingConfig(_Section):
    """Which project content is indexed and how embedding work is dispatched."""

    include_tasks: bool = Field(default=True)
    include_notes: bool = Field(default=True)
    min_note_length: int = Field(
        default=50,
        ge=0,
        description="Notes must be longer than this to be indexed",
    )
    max_concurrent_batches: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Upper bound on embedding batches in flight",
    )
    auto_embed: bool = Field(
        default=True,
        description="Embed chunks while indexing (False defers to reindex)",
    )


class RAGConfig(BaseModel):
    """Composite retrieval configuration."""

    model_config = ConfigDict(frozen=True)

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)


SECTIONS: dict[str, type[_Section]] = {
    "embedding": EmbeddingConfig,
    "chunking": ChunkingConfig,
    "search": SearchConfig,
    "indexing": IndexingConfig,
}


def _field_name(section_cls: type[_Section], key: str) -> str:
    """Map a snake_case name or camelCase alias to the model field name."""
    if key in section_cls.model_fields:
        return key
    for name, info in section_cls.model_fields.items():
        if info.alias == key:
            return name
    raise ConfigError(f"Unknown field '{key}' in {section_cls.__name__}")


def merge_config(current: RAGConfig, updates: Mapping[str, Any]) -> RAGConfig:
    """
    Deep-merge a partial update into a config.

    Each section in ``updates`` is merged field by field; ``None`` values mean
    "not provided" and leave the stored field untouched.

    Args:
        current: The config to update
        updates: Mapping of section name to a mapping of field updates

    Returns:
        A new, validated RAGConfig

    Raises:
        ConfigError: On unknown sections or fields, or invalid values
    """
    if not isinstance(updates, Mapping):
        raise ConfigError(f"Config update must be a mapping, got {type(updates).__name__}")

    merged: dict[str, _Section] = {name: getattr(current, name) for name in SECTIONS}

    for section_name, section_update in updates.items():
        if section_update is None:
            continue
        section_cls = SECTIONS.get(section_name)
        if section_cls is None:
            raise ConfigError(f"Unknown config section '{section_name}'")
        if isinstance(section_update, BaseModel):
            section_update = section_update.model_dump(exclude_unset=True)
        if not isinstance(section_update, Mapping):
            raise ConfigError(f"Config section '{section_name}' must be a mapping")

        values = merged[section_name].model_dump()
        for key, value in section_update.items():
            if value is None:
                continue
            values[_field_name(section_cls, key)] = value

        try:
            merged[section_name] = section_cls.model_validate(values)
        except PydanticValidationError as exc:
            raise ConfigError(f"Invalid '{section_name}' config: {exc}") from exc

    return RAGConfig(**merged)
