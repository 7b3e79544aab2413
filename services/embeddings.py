from typing import List, Optional, Callable
from services.chunker import Chunker
from config import settings
import numpy as np
import importlib
import logging

logger = logging.getLogger(__name__)

EmbedFn = Callable[[List[str]], List[List[float]]]


class EmbeddingsService:
    """Turns entity text into vectors through a pluggable embedding function

    The embedding model is an external capability. With no embed_fn the
    service is disabled and entities are stored without embeddings, which
    keeps them out of similarity search instead of polluting it with zero
    vectors.
    """

    def __init__(self, embed_fn: Optional[EmbedFn] = None, model: str = "none", dimensions: Optional[int] = None,
                 chunker: Optional[Chunker] = None):
        self.embed_fn = embed_fn
        self.model = model
        self.dimensions = dimensions
        self.chunker = chunker or Chunker(target_tokens=512, overlap_tokens=32)
        if embed_fn is None:
            logger.warning("Embeddings service disabled - no embedding function configured")

    @classmethod
    def from_settings(cls) -> "EmbeddingsService":
        """Service for EMBEDDING_FUNCTION ("module:callable"), disabled when unset"""
        if not settings.EMBEDDING_FUNCTION:
            return cls()

        module_name, _, attr = settings.EMBEDDING_FUNCTION.partition(":")
        try:
            embed_fn = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"EMBEDDING_FUNCTION {settings.EMBEDDING_FUNCTION!r} cannot be loaded: {e}")
        if not callable(embed_fn):
            raise ValueError(f"EMBEDDING_FUNCTION {settings.EMBEDDING_FUNCTION!r} is not callable")

        logger.info(f"Embeddings enabled with {settings.EMBEDDING_FUNCTION} (model {settings.EMBEDDING_MODEL})")
        return cls(embed_fn=embed_fn, model=settings.EMBEDDING_MODEL, dimensions=settings.EMBEDDING_DIMENSIONS)

    @property
    def enabled(self) -> bool:
        return self.embed_fn is not None

    def generate_embedding(self, text: str) -> Optional[List[float]]:
        """Embed a text, averaging chunk vectors for long inputs

        Args:
            text: The text to embed

        Returns:
            Unit-length vector, or None when disabled or text is empty
        """
        if not self.enabled or not text or not text.strip():
            return None

        chunks = [c["text"] for c in self.chunker.chunk_text(text)] or [text]
        vectors = np.asarray(self.embed_fn(chunks), dtype=float)
        if vectors.ndim != 2 or len(vectors) != len(chunks):
            logger.error(f"Embedding function returned shape {vectors.shape} for {len(chunks)} chunks")
            return None
        if self.dimensions and vectors.shape[1] != self.dimensions:
            logger.error(f"Embedding dimension {vectors.shape[1]} != configured {self.dimensions}")
            return None

        mean = vectors.mean(axis=0)
        norm = np.linalg.norm(mean)
        if norm == 0:
            return None
        return (mean / norm).tolist()

    def generate_embeddings_batch(self, texts: List[str]) -> List[Optional[List[float]]]:
        return [self.generate_embedding(text) for text in texts]

    def get_model_info(self) -> dict:
        """Get information about the embedding model being used

        Returns:
            Dictionary with model name and dimensions
        """
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "enabled": self.enabled,
        }
