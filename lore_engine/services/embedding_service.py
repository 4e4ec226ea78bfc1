"""Embedding service for converting chunk text to vectors."""

from typing import List
import logging

from lore_engine.exceptions import EmbeddingUnavailableError

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating text embeddings using sentence-transformers."""

    # Class-level cache for the model (shared across instances)
    _model_cache = {}

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str = "cpu", batch_size: int = 32):
        """
        Initialize embedding service with specified model.

        Args:
            model_name: Name of the sentence-transformers model to use
                       Default: all-MiniLM-L6-v2 (384 dims, fast, good quality)
            device: Torch device for encoding
            batch_size: Batch size for encoding (larger = faster but more memory)

        Raises:
            EmbeddingUnavailableError: If the model cannot be loaded
        """
        self.model_name = model_name
        self.batch_size = batch_size
        self._content_cache = {}  # Instance-level content cache

        cache_key = (model_name, device)
        if cache_key not in self._model_cache:
            try:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model: {model_name}")
                self._model_cache[cache_key] = SentenceTransformer(model_name, device=device)
                logger.info(f"Model loaded: {model_name} (device: {device})")
            except Exception as e:
                raise EmbeddingUnavailableError(f"Could not load embedding model '{model_name}': {e}") from e

        self.model = self._model_cache[cache_key]
        self.dimensions = self.model.get_sentence_embedding_dimension()
        logger.debug(f"Embedding dimensions: {self.dimensions}")

    def embed(self, text: str, use_cache: bool = True) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed
            use_cache: Whether to use cached embeddings for this text

        Returns:
            List of floats representing the embedding vector
        """
        return self.embed_batch([text], use_cache=use_cache)[0]

    def embed_batch(self, texts: List[str], use_cache: bool = True) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in one encode call.

        Args:
            texts: List of texts to embed
            use_cache: Whether to check/update cache

        Returns:
            List of embedding vectors, aligned with texts

        Raises:
            EmbeddingUnavailableError: If encoding fails
        """
        if not texts:
            return []

        embeddings = [None] * len(texts)
        uncached_indices = []
        uncached_texts = []

        for i, text in enumerate(texts):
            if use_cache and text in self._content_cache:
                embeddings[i] = self._content_cache[text]
            else:
                uncached_indices.append(i)
                uncached_texts.append(text)

        if uncached_texts:
            logger.debug(f"Generating {len(uncached_texts)} embeddings in batch")
            try:
                # Normalized vectors make cosine distance a proper similarity
                uncached_embeddings = self.model.encode(
                    uncached_texts,
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                    batch_size=self.batch_size
                ).tolist()
            except Exception as e:
                logger.error(f"Failed to generate batch embeddings: {e}")
                raise EmbeddingUnavailableError(f"Embedding failed: {e}") from e

            for idx, embedding in zip(uncached_indices, uncached_embeddings):
                embeddings[idx] = embedding
                if use_cache:
                    self._content_cache[texts[idx]] = embedding

        return embeddings

    def clear_cache(self) -> None:
        """Clear the instance-level content cache."""
        cache_size = len(self._content_cache)
        self._content_cache.clear()
        logger.debug(f"Cleared {cache_size} cached embeddings")
