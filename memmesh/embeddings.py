"""
Embedder - Converts text into vectors that capture meaning.

Similar meanings = similar numbers. The model is loaded lazily because it is
a large download and most mesh reads never need it.
"""

from typing import Optional

from memmesh.log import get_logger

logger = get_logger("memmesh.embeddings")


class Embedder:
    """Lazy sentence-transformers wrapper."""

    def __init__(self, model_name: str = "all-mpnet-base-v2", model=None):
        self.model_name = model_name
        self._model = model

    @property
    def model(self):
        """Load the embedding model on first use."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> Optional[list[float]]:
        """Vector for one text, or None for blank input."""
        if not text or not text.strip():
            return None
        return [float(v) for v in self.model.encode(text)]
