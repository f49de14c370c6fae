"""Document chunking, embedding and nearest-neighbour retrieval."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

import httpx

from ...services.settings import Settings
from ..errors import EmbeddingDimensionError, RetrievalError
from ..events import (
    ContextRetrieved,
    DocumentIngested,
    EmbeddingGenerated,
    EventBus,
    IngestionFailed,
    IngestionProgress,
    QueryFailed,
)
from .documents import is_supported, read_document

LOGGER = logging.getLogger(__name__)
_SOURCE = "retrieval"

Vector = tuple[float, ...]

_SENTENCE_TERMINATORS = ".!?"
_SENTENCE_LOOKBACK = 100


@dataclass(slots=True)
class RetrievalSettings:
    """Subset of settings required to configure the retrieval engine."""

    embedding_model: str = "nomic-embed-text"
    embedding_url: str = "http://localhost:11434/api/embeddings"
    chunk_size: int = 512
    chunk_overlap: int = 50
    top_k: int = 3
    embedding_timeout: float = 60.0
    max_concurrent_embeddings: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalSettings":
        return cls(
            embedding_model=settings.rag_embedding_model,
            embedding_url=settings.rag_embedding_url,
            chunk_size=settings.rag_chunk_size,
            chunk_overlap=settings.rag_chunk_overlap,
            top_k=settings.rag_top_k,
            embedding_timeout=settings.rag_embedding_timeout,
        )


@dataclass(slots=True, frozen=True)
class DocumentChunk:
    text: str
    source_file: str
    chunk_index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return len(self.text)


# ----------------------------------------------------------------------
# Chunking
# ----------------------------------------------------------------------


def chunk_text(
    text: str,
    *,
    chunk_size: int = 512,
    overlap: int = 50,
    source_file: str = "",
) -> list[DocumentChunk]:
    """Split *text* into overlapping windows that prefer sentence and word boundaries."""

    size = max(1, int(chunk_size))
    overlap = max(0, int(overlap))
    length = len(text)
    chunks: list[DocumentChunk] = []
    start = 0
    while start < length:
        end = min(start + size, length)
        if end < length:
            end = _break_point(text, start, end)

        piece = text[start:end].strip()
        if piece:
            chunks.append(
                DocumentChunk(
                    text=piece,
                    source_file=source_file,
                    chunk_index=len(chunks),
                    start=start,
                    end=end,
                )
            )
        if end >= length:
            break
        next_start = end - overlap
        start = next_start if next_start > start else end
    LOGGER.debug("Chunked %d characters into %d chunks", length, len(chunks))
    return chunks


def _break_point(text: str, start: int, end: int) -> int:
    last = len(text) - 1
    for index in range(min(end, last - 1), start, -1):
        if text[index] in _SENTENCE_TERMINATORS and text[index + 1].isspace():
            if end - index < _SENTENCE_LOOKBACK:
                return index + 1
            break
    for index in range(min(end, last), start, -1):
        if text[index].isspace():
            return index
    return end


# ----------------------------------------------------------------------
# Similarity index
# ----------------------------------------------------------------------


class SimilarityIndex:
    """Flat L2 index; each vector remembers the chunk position it embeds."""

    def __init__(self) -> None:
        self._entries: list[tuple[int, Vector]] = []
        self.dimension: int | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, position: int, vector: Sequence[float]) -> None:
        values = tuple(float(component) for component in vector)
        if self.dimension is None:
            self.dimension = len(values)
            LOGGER.info("Initialized similarity index with dimension %d", self.dimension)
        elif len(values) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(values))
        self._entries.append((position, values))

    def nearest(self, query: Sequence[float], k: int) -> list[int]:
        """Chunk positions of the *k* vectors closest to *query*, nearest first."""

        values = tuple(float(component) for component in query)
        if self.dimension is not None and len(values) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(values))
        ranked = sorted(
            self._entries,
            key=lambda entry: (squared_distance(values, entry[1]), entry[0]),
        )
        return [position for position, _ in ranked[: max(0, k)]]

    def clear(self) -> None:
        """Drop every vector; the dimension set by the first vector stays."""
        self._entries.clear()


def squared_distance(lhs: Sequence[float], rhs: Sequence[float]) -> float:
    return sum((a - b) * (a - b) for a, b in zip(lhs, rhs))


# ----------------------------------------------------------------------
# Embedding providers
# ----------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Protocol implemented by embedding backends."""

    async def embed(self, text: str) -> Sequence[float]:
        """Return the embedding vector for *text*."""


class OllamaEmbeddingProvider:
    """Embedding provider for the ``/api/embeddings`` endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str,
        model: str,
        timeout: float = 60.0,
    ) -> None:
        self._client = client
        self.url = url
        self.model = model
        self._timeout = timeout

    async def embed(self, text: str) -> Sequence[float]:
        try:
            response = await self._client.post(
                self.url,
                json={"model": self.model, "prompt": text},
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RetrievalError(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise RetrievalError(f"Invalid embedding response: {exc}") from exc
        vector = payload.get("embedding") if isinstance(payload, dict) else None
        if not isinstance(vector, list) or not vector:
            raise RetrievalError("Invalid embedding response")
        return _normalize_vector(vector)


def _normalize_vector(value: Any) -> list[float]:
    try:
        return [float(component) for component in value]
    except (TypeError, ValueError) as exc:
        raise RetrievalError(f"Embedding vector is not numeric: {exc}") from exc


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------


@dataclass(slots=True)
class _IngestState:
    documents: dict[str, int] = field(default_factory=dict)
    chunks: list[DocumentChunk] = field(default_factory=list)
    generation: int = 0


class RetrievalEngine:
    """Ingests documents into an in-memory index and answers top-K queries.

    Embeddings are requested in the background after :meth:`ingest` returns;
    :meth:`wait_for_embeddings` waits for them to land in the index.
    """

    def __init__(
        self,
        settings: RetrievalSettings | None = None,
        *,
        bus: EventBus | None = None,
        provider: EmbeddingProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or RetrievalSettings()
        self._bus = bus or EventBus()
        self._owns_client = provider is None and client is None
        self._client = client
        if provider is None:
            self._client = client or httpx.AsyncClient()
            provider = OllamaEmbeddingProvider(
                self._client,
                url=self.settings.embedding_url,
                model=self.settings.embedding_model,
                timeout=self.settings.embedding_timeout,
            )
        self._provider = provider
        self._index = SimilarityIndex()
        self._state = _IngestState()
        self._tasks: set[asyncio.Task[None]] = set()
        self._semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_embeddings))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def chunks(self) -> tuple[DocumentChunk, ...]:
        return tuple(self._state.chunks)

    @property
    def documents(self) -> dict[str, int]:
        """Ingested paths mapped to their chunk counts."""
        return dict(self._state.documents)

    @property
    def embedded_count(self) -> int:
        return len(self._index)

    @property
    def dimension(self) -> int | None:
        return self._index.dimension

    @property
    def has_chunks(self) -> bool:
        return bool(self._state.chunks)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, path: Path | str) -> int:
        """Read, chunk and schedule embeddings for one document.

        Returns:
            The number of chunks created.

        Raises:
            RetrievalError: the document could not be read or produced no chunks.
        """
        file_path = str(path)
        LOGGER.info("Ingesting document: %s", file_path)
        try:
            content = await read_document(path)
            pieces = chunk_text(
                content,
                chunk_size=self.settings.chunk_size,
                overlap=self.settings.chunk_overlap,
                source_file=file_path,
            )
            if not pieces:
                raise RetrievalError("Document produced no chunks")
        except RetrievalError as exc:
            LOGGER.error("Failed to ingest %s: %s", file_path, exc)
            self._publish(IngestionFailed(file_path, str(exc), source=_SOURCE))
            raise

        LOGGER.info("Created %d chunks from %s", len(pieces), Path(file_path).name)
        state = self._state
        state.documents[file_path] = len(pieces)
        offset = len(state.chunks)
        state.chunks.extend(pieces)
        for number, chunk in enumerate(pieces, start=1):
            self._publish(IngestionProgress(number, len(pieces), source=_SOURCE))
            self._schedule_embedding(offset + number - 1, chunk.text, state.generation)
        self._publish(DocumentIngested(file_path, len(pieces), source=_SOURCE))
        return len(pieces)

    async def ingest_directory(self, path: Path | str) -> int:
        """Ingest every supported file directly inside *path*; returns files ingested."""

        directory = Path(path)
        if not directory.is_dir():
            raise RetrievalError(f"Directory does not exist: {directory}")
        files = sorted(
            entry for entry in directory.iterdir()
            if entry.is_file() and is_supported(entry)
        )
        LOGGER.info("Ingesting %d files from directory: %s", len(files), directory)
        ingested = 0
        for entry in files:
            try:
                await self.ingest(entry)
            except RetrievalError:
                continue
            ingested += 1
        LOGGER.info("Successfully ingested %d/%d files", ingested, len(files))
        return ingested

    def clear(self) -> None:
        """Drop every chunk and embedding; in-flight embeddings are discarded."""

        LOGGER.info("Clearing all documents and embeddings")
        for task in list(self._tasks):
            task.cancel()
        generation = self._state.generation + 1
        self._state = _IngestState(generation=generation)
        self._index.clear()

    async def wait_for_embeddings(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(self, text: str, top_k: int | None = None) -> list[str]:
        """Return the texts of the *top_k* chunks nearest to *text*.

        Raises:
            RetrievalError: nothing is ingested, no embedding has completed, or
                the query embedding failed.
        """
        limit = self.settings.top_k if top_k is None else top_k
        try:
            if not self._state.chunks:
                raise RetrievalError("No documents ingested yet")
            if not len(self._index):
                raise RetrievalError("Embeddings not ready yet")
            LOGGER.info("Retrieving top %d contexts for query", limit)
            try:
                vector = await self._provider.embed(text)
            except RetrievalError as exc:
                raise RetrievalError(f"Query embedding generation failed: {exc}") from exc
            positions = self._index.nearest(vector, limit)
        except RetrievalError as exc:
            LOGGER.warning("Query failed: %s", exc)
            self._publish(QueryFailed(str(exc), source=_SOURCE))
            raise

        chunks = self._state.chunks
        contexts = [chunks[position].text for position in positions if position < len(chunks)]
        LOGGER.info("Retrieved %d relevant contexts", len(contexts))
        self._publish(ContextRetrieved(contexts, source=_SOURCE))
        return contexts

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_embedding(self, position: int, text: str, generation: int) -> None:
        task = asyncio.ensure_future(self._embed_chunk(position, text, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _embed_chunk(self, position: int, text: str, generation: int) -> None:
        async with self._semaphore:
            try:
                vector = await self._provider.embed(text)
            except RetrievalError as exc:
                LOGGER.error("Embedding generation failed for chunk %d: %s", position, exc)
                return
        if generation != self._state.generation:
            return
        try:
            self._index.add(position, vector)
        except EmbeddingDimensionError as exc:
            LOGGER.error("Dropping embedding for chunk %d: %s", position, exc)
            return
        LOGGER.debug("Generated embedding for chunk %d (dim: %d)", position, len(vector))
        self._publish(EmbeddingGenerated(position, source=_SOURCE))

    def _publish(self, event: Any) -> None:
        self._bus.publish(event)


__all__ = [
    "DocumentChunk",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "RetrievalEngine",
    "RetrievalSettings",
    "SimilarityIndex",
    "chunk_text",
    "squared_distance",
]
