"""
Embedding module for Folio.

One Embedder implementation per EmbeddingType: sentence-transformers for
``local`` books, the OpenAI embeddings API for ``openai`` books.
"""

import os
from typing import List, Optional

import numpy as np

from errors import DimensionMismatch, MalformedProviderResponse, ProviderUnavailable
from models import EmbeddingType


class Embedder:
    """Common contract: ``embed`` and order-preserving ``embed_batch``."""

    embedding_type: EmbeddingType

    def __init__(self, embedding_dim: int):
        self.embedding_dim = embedding_dim

    def embed(self, text: str) -> List[float]:
        """
        Convert text to embedding vector.

        Args:
            text: Text to embed

        Returns:
            List of floats representing the embedding vector
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Convert multiple texts to embedding vectors.

        Blank texts map to zero vectors so that the output always lines up
        with the input. A failure anywhere fails the whole batch.
        """
        if not texts:
            return []

        positions = [i for i, text in enumerate(texts) if text and text.strip()]
        encoded: List[List[float]] = []
        if positions:
            encoded = self._encode([texts[i] for i in positions])
            if len(encoded) != len(positions):
                raise MalformedProviderResponse(
                    f"Provider returned {len(encoded)} vectors for {len(positions)} texts"
                )

        result: List[List[float]] = [[0.0] * self.embedding_dim for _ in texts]
        for position, vector in zip(positions, encoded):
            if len(vector) != self.embedding_dim:
                raise DimensionMismatch(self.embedding_dim, len(vector), "embedding")
            result[position] = [float(x) for x in vector]
        return result

    def _encode(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    def get_embedding_dim(self) -> int:
        """Get the dimension of embedding vectors."""
        return self.embedding_dim


class LocalEmbedder(Embedder):
    """Handles text embedding using sentence-transformers."""

    embedding_type = EmbeddingType.LOCAL

    def __init__(self, model_name: Optional[str] = None):
        """
        Initialize the embedder.

        Args:
            model_name: Name of the sentence-transformers model to use.
                       Defaults to `FOLIO_LOCAL_EMBED_MODEL` or `all-MiniLM-L6-v2`.
        """
        super().__init__(embedding_dim=384)  # refined after load
        self.model_name = (
            model_name
            or os.environ.get("FOLIO_LOCAL_EMBED_MODEL")
            or "sentence-transformers/all-MiniLM-L6-v2"
        )
        self.model = None

    def load_model(self):
        """Lazy load the sentence-transformers model."""
        if self.model is not None:
            return
        try:
            print(f"Attempting to load sentence-transformers model: {self.model_name}")
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ProviderUnavailable(
                "sentence-transformers is required for local embeddings. "
                f"Install it and ensure model '{self.model_name}' is available. Reason: {e}"
            ) from e

        try:
            self.model = SentenceTransformer(self.model_name)
            self.embedding_dim = int(self.model.get_sentence_embedding_dimension())
            print(
                f"✓ Model loaded successfully. Embedding dimension: {self.embedding_dim}"
            )
        except Exception as e:
            self.model = None
            raise ProviderUnavailable(
                f"Failed to load sentence-transformers model '{self.model_name}': {e}"
            ) from e

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        self.load_model()
        return super().embed_batch(texts)

    def _encode(self, texts: List[str]) -> List[List[float]]:
        try:
            embeddings = self.model.encode(
                texts,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise ProviderUnavailable(f"Batch embedding failed: {e}") from e
        return np.asarray(embeddings, dtype=np.float32).tolist()

    def get_embedding_dim(self) -> int:
        self.load_model()
        return self.embedding_dim


class OpenAIEmbedder(Embedder):
    """Remote embeddings through the OpenAI API."""

    embedding_type = EmbeddingType.OPENAI

    KNOWN_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.model_name = (
            model_name
            or os.environ.get("FOLIO_REMOTE_EMBED_MODEL")
            or "text-embedding-3-small"
        )
        super().__init__(embedding_dim=self.KNOWN_DIMENSIONS.get(self.model_name, 1536))
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.client = client

    def _get_client(self):
        if self.client is not None:
            return self.client
        if not self.api_key or self.api_key == "default_key":
            raise ProviderUnavailable("OpenAI API key not properly configured")
        from openai import OpenAI

        self.client = OpenAI(api_key=self.api_key)
        return self.client

    def _encode(self, texts: List[str]) -> List[List[float]]:
        import openai

        client = self._get_client()
        try:
            response = client.embeddings.create(model=self.model_name, input=texts)
        except openai.OpenAIError as e:
            raise ProviderUnavailable(f"Embedding provider call failed: {e}") from e

        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]


def create_embedder(embedding_type: EmbeddingType) -> Embedder:
    """Build the Embedder implementation for a book's embedding type."""
    embedding_type = EmbeddingType(embedding_type)
    if embedding_type == EmbeddingType.LOCAL:
        return LocalEmbedder()
    return OpenAIEmbedder()


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns:
        Cosine similarity score between -1 and 1
    """
    if len(vec1) != len(vec2):
        raise DimensionMismatch(len(vec1), len(vec2))

    v1 = np.array(vec1, dtype=np.float64)
    v2 = np.array(vec2, dtype=np.float64)
    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(v1, v2) / (norm1 * norm2))
