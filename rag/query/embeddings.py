"""
Embeddings - Genera vectores de texto con sentence-transformers.

Este módulo:
1. Carga el modelo de embeddings una sola vez (lazy)
2. Expone embed / embed_batch async (el encode corre en un thread)
3. Normaliza los vectores para similitud coseno
4. Convierte fallas del modelo en ProviderError
"""

import asyncio
import logging
from typing import List, Optional

import numpy as np

from agent.errors import ProviderError, retry_async

logger = logging.getLogger(__name__)

# Modelo multilingüe por defecto (indonesio, inglés y 50+ idiomas)
DEFAULT_EMBEDDING_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"


def normalize(vectors: np.ndarray) -> np.ndarray:
    """Normaliza vectores (L2) para similitud coseno."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1  # Evitar div by zero
    return vectors / norms


class SentenceTransformerEmbedder:
    """Proveedor de embeddings basado en sentence-transformers."""

    def __init__(
        self,
        model_name: str = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        batch_size: int = 32,
    ):
        self.model_name = model_name or DEFAULT_EMBEDDING_MODEL
        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._batch_size = batch_size
        self._model = None
        self._dimension: Optional[int] = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Cargando modelo de embeddings: {self.model_name}")
            try:
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise ProviderError(
                    f"Cannot load embedding model {self.model_name}: {e}"
                ) from e
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Modelo cargado (dimensión: {self._dimension})")
        return self._model

    @property
    def dimension(self) -> int:
        """Dimensión D de los vectores (fija durante la vida del proceso)."""
        self._load()
        return self._dimension

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        try:
            vectors = model.encode(
                texts,
                batch_size=self._batch_size,
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise ProviderError(f"Embedding failed: {e}") from e
        return normalize(np.asarray(vectors, dtype=np.float32)).tolist()

    async def _encode_async(self, texts: List[str]) -> List[List[float]]:
        async def _call():
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._encode, texts), timeout=self._timeout
                )
            except asyncio.TimeoutError as e:
                raise ProviderError(
                    f"Embedding timed out after {self._timeout}s", retryable=True
                ) from e

        return await retry_async(
            _call,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label="embeddings",
        )

    async def embed(self, text: str) -> List[float]:
        """Vector de un texto."""
        vectors = await self._encode_async([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Vectores de varios textos, en el mismo orden de entrada."""
        if not texts:
            return []
        vectors = await self._encode_async(list(texts))
        if len(vectors) != len(texts):
            raise ProviderError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors
