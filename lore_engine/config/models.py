"""Pydantic models for configuration validation."""

from pathlib import Path
from typing import Literal
from pydantic import BaseModel, Field, field_validator, ConfigDict


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    model_name: str = "all-MiniLM-L6-v2"
    device: str = Field(default="cpu", description="Torch device for the embedding model")
    batch_size: int = Field(default=32, gt=0, le=512)


class VectorStoreConfig(BaseModel):
    """Vector index configuration."""

    persist_directory: Path = Path("data/vector_store")
    collection_name: str = "knowledge_vectors"
    distance: Literal["cosine"] = "cosine"

    @field_validator('persist_directory')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure paths are cross-platform."""
        return Path(v)


class ChunkProfile(BaseModel):
    """Chunk sizing for one content type."""

    chunk_size: int = Field(gt=0, description="Target chunk size in estimated tokens")
    overlap: int = Field(default=0, ge=0, description="Overlap between chunks in estimated tokens")
    method: Literal["paragraph", "sentence", "sliding", "semantic"] = "paragraph"

    @field_validator('overlap')
    @classmethod
    def validate_overlap(cls, v: int, info) -> int:
        """Overlap must leave room for forward progress."""
        chunk_size = info.data.get('chunk_size')
        if chunk_size is not None and v >= chunk_size:
            raise ValueError('overlap must be smaller than chunk_size')
        return v


def _default_chunk_profiles() -> dict:
    return {
        "lore": ChunkProfile(chunk_size=750, overlap=50, method="paragraph"),
        "memory": ChunkProfile(chunk_size=400, overlap=25, method="sentence"),
        "legacy_memory": ChunkProfile(chunk_size=600, overlap=40, method="paragraph"),
        "document": ChunkProfile(chunk_size=1000, overlap=75, method="sliding"),
    }


class ChunkingConfig(BaseModel):
    """Chunking profiles keyed by content type."""

    profiles: dict[str, ChunkProfile] = Field(default_factory=_default_chunk_profiles)
    default_profile: str = "lore"

    def profile_for(self, content_type: str) -> ChunkProfile:
        """Return the profile for a content type, falling back to the default profile."""
        if content_type in self.profiles:
            return self.profiles[content_type]
        return self.profiles.get(self.default_profile) or _default_chunk_profiles()["lore"]


class BudgetConfig(BaseModel):
    """Per-turn token budget for injected knowledge.

    ``budget_percentage`` is expressed in percent (0-100) of
    ``max_context_tokens``.
    """

    max_context_tokens: int = Field(default=8192, gt=0)
    budget_percentage: float = Field(default=25.0, ge=0.0, le=100.0)
    budget_cap_tokens: int = Field(default=2048, ge=0)
    reserved_for_conversation: int = Field(default=0, ge=0)
    min_activations: int = Field(default=0, ge=0)


class ActivationConfig(BaseModel):
    """Activation engine configuration."""

    vector_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for scan-window embedding plus index query before falling back to keyword-only"
    )
    hybrid_vector_boost: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Share of the vector score added when an entry matches by keyword and vector"
    )
    enable_group_scoring: bool = True
    default_budget: BudgetConfig = Field(default_factory=BudgetConfig)
    activation_log_enabled: bool = Field(
        default=False,
        description="Write one JSONL record per evaluated turn under paths.activation_logs"
    )


class DatabaseConfig(BaseModel):
    """Relational database configuration."""

    url: str = "sqlite:///data/lore_engine.db"
    echo: bool = False


class PathsConfig(BaseModel):
    """File path configuration."""

    data: Path = Path("data")
    activation_logs: Path = Path("data/activation_logs")

    @field_validator('data', 'activation_logs')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure paths are cross-platform."""
        return Path(v)


class SystemConfig(BaseModel):
    """Complete system configuration."""

    model_config = ConfigDict(extra='ignore')

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    activation: ActivationConfig = Field(default_factory=ActivationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
