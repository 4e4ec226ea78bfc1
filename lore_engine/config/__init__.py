"""Configuration loading and validation."""

from .models import (
    SystemConfig,
    EmbeddingConfig,
    VectorStoreConfig,
    ChunkingConfig,
    ChunkProfile,
    BudgetConfig,
    ActivationConfig,
    DatabaseConfig,
    PathsConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "SystemConfig",
    "EmbeddingConfig",
    "VectorStoreConfig",
    "ChunkingConfig",
    "ChunkProfile",
    "BudgetConfig",
    "ActivationConfig",
    "DatabaseConfig",
    "PathsConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
