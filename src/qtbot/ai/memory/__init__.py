"""Document ingestion and retrieval for prompt augmentation."""

from .documents import SUPPORTED_EXTENSIONS, read_document
from .retrieval import (
    DocumentChunk,
    EmbeddingProvider,
    OllamaEmbeddingProvider,
    RetrievalEngine,
    RetrievalSettings,
    SimilarityIndex,
    chunk_text,
)

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "DocumentChunk",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "RetrievalEngine",
    "RetrievalSettings",
    "SimilarityIndex",
    "chunk_text",
    "read_document",
]
