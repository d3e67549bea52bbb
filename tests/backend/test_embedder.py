"""
Unit tests for the Embedder module.
"""

import os
import sys
from unittest.mock import Mock, patch

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from embedder import LocalEmbedder, OpenAIEmbedder, cosine_similarity, create_embedder
from errors import DimensionMismatch, MalformedProviderResponse, ProviderUnavailable
from models import EmbeddingType


def _fake_encode(texts, **kwargs):
    """Deterministic 4-d vectors derived from text length."""
    return np.array([[len(t), 1.0, 0.0, 0.5] for t in texts], dtype=np.float32)


class TestLocalEmbedder:
    """Test suite for the sentence-transformers embedder."""

    def setup_method(self):
        """Set up test fixtures."""
        self.embedder = LocalEmbedder(model_name="all-MiniLM-L6-v2")

    def _mock_model(self, mock_sentence_transformer, dim=4):
        mock_model = Mock()
        mock_model.get_sentence_embedding_dimension.return_value = dim
        mock_model.encode.side_effect = _fake_encode
        mock_sentence_transformer.return_value = mock_model
        return mock_model

    def test_embedder_initialization(self):
        """Test that embedder initializes with correct parameters."""
        embedder = LocalEmbedder(model_name="test-model")
        assert embedder.model_name == "test-model"
        assert embedder.model is None
        assert embedder.embedding_dim == 384  # Default for MiniLM-L6-v2
        assert embedder.embedding_type == EmbeddingType.LOCAL

    def test_model_name_from_environment(self, monkeypatch):
        monkeypatch.setenv("FOLIO_LOCAL_EMBED_MODEL", "custom-model")
        assert LocalEmbedder().model_name == "custom-model"

    @patch("sentence_transformers.SentenceTransformer")
    def test_load_model(self, mock_sentence_transformer):
        """Test loading the sentence-transformers model."""
        self._mock_model(mock_sentence_transformer, dim=8)

        self.embedder.load_model()
        self.embedder.load_model()

        assert self.embedder.model is not None
        mock_sentence_transformer.assert_called_once_with("all-MiniLM-L6-v2")
        assert self.embedder.embedding_dim == 8

    @patch("sentence_transformers.SentenceTransformer")
    def test_load_failure_is_provider_unavailable(self, mock_sentence_transformer):
        mock_sentence_transformer.side_effect = OSError("model not found")

        with pytest.raises(ProviderUnavailable):
            self.embedder.embed("hello")
        assert self.embedder.model is None

    @patch("sentence_transformers.SentenceTransformer")
    def test_embed_batch_preserves_order_and_length(self, mock_sentence_transformer):
        mock_model = self._mock_model(mock_sentence_transformer)

        texts = ["a", "", "ccc", "   "]
        vectors = self.embedder.embed_batch(texts)

        assert len(vectors) == len(texts)
        assert vectors[0][0] == 1.0
        assert vectors[2][0] == 3.0
        assert vectors[1] == [0.0] * 4
        assert vectors[3] == [0.0] * 4
        # Blank texts never reach the model
        assert mock_model.encode.call_args.args[0] == ["a", "ccc"]

    @patch("sentence_transformers.SentenceTransformer")
    def test_single_and_batch_agree(self, mock_sentence_transformer):
        self._mock_model(mock_sentence_transformer)

        single = self.embedder.embed("same text")
        batch = self.embedder.embed_batch(["other", "same text"])

        assert single == batch[1]

    def test_empty_batch(self):
        assert self.embedder.embed_batch([]) == []
        assert self.embedder.model is None

    @patch("sentence_transformers.SentenceTransformer")
    def test_wrong_vector_count(self, mock_sentence_transformer):
        mock_model = self._mock_model(mock_sentence_transformer)
        mock_model.encode.side_effect = lambda texts, **kw: np.zeros((1, 4))

        with pytest.raises(MalformedProviderResponse):
            self.embedder.embed_batch(["one", "two"])

    @patch("sentence_transformers.SentenceTransformer")
    def test_wrong_vector_length(self, mock_sentence_transformer):
        mock_model = self._mock_model(mock_sentence_transformer)
        mock_model.encode.side_effect = lambda texts, **kw: np.zeros((len(texts), 3))

        with pytest.raises(DimensionMismatch):
            self.embedder.embed("text")

    @patch("sentence_transformers.SentenceTransformer")
    def test_encode_failure(self, mock_sentence_transformer):
        mock_model = self._mock_model(mock_sentence_transformer)
        mock_model.encode.side_effect = RuntimeError("CUDA out of memory")

        with pytest.raises(ProviderUnavailable):
            self.embedder.embed("text")


class TestOpenAIEmbedder:
    """Test suite for the remote embedder with a mocked client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = Mock()
        self.embedder = OpenAIEmbedder(model_name="text-embedding-3-small", client=self.client)

    def _respond(self, vectors_by_index):
        items = []
        for index, vector in vectors_by_index:
            item = Mock()
            item.index = index
            item.embedding = vector
            items.append(item)
        response = Mock()
        response.data = items
        self.client.embeddings.create.return_value = response

    def test_known_dimension(self):
        assert self.embedder.get_embedding_dim() == 1536
        assert OpenAIEmbedder(model_name="text-embedding-3-large").embedding_dim == 3072
        assert self.embedder.embedding_type == EmbeddingType.OPENAI

    def test_results_follow_input_order(self):
        first = [1.0] + [0.0] * 1535
        second = [0.0, 1.0] + [0.0] * 1534
        # Provider returns items out of order
        self._respond([(1, second), (0, first)])

        vectors = self.embedder.embed_batch(["first", "second"])

        assert vectors == [first, second]
        kwargs = self.client.embeddings.create.call_args.kwargs
        assert kwargs == {"model": "text-embedding-3-small", "input": ["first", "second"]}

    def test_provider_error(self):
        import openai

        self.client.embeddings.create.side_effect = openai.OpenAIError("rate limited")

        with pytest.raises(ProviderUnavailable):
            self.embedder.embed("text")

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ProviderUnavailable):
            OpenAIEmbedder().embed("text")

    def test_wrong_dimension_from_provider(self):
        self._respond([(0, [0.1, 0.2])])

        with pytest.raises(DimensionMismatch):
            self.embedder.embed("text")


class TestFactoryAndSimilarity:
    """Embedder factory and cosine similarity."""

    def test_create_embedder(self):
        assert isinstance(create_embedder(EmbeddingType.LOCAL), LocalEmbedder)
        assert isinstance(create_embedder("openai"), OpenAIEmbedder)

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
        assert cosine_similarity([0, 0], [1, 0]) == 0.0

    def test_cosine_similarity_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            cosine_similarity([1, 0], [1, 0, 0])
