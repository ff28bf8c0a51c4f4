"""Embedding service for Scribe: text chunking, vector generation, and storage.

Chunks note text with overlap, generates embeddings via Ollama (falling back
to an OpenAI-compatible endpoint when configured) and stores vectors in
Qdrant, one point per chunk tagged with its note id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import unquote
from uuid import uuid4

import httpx
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams, models

logger = logging.getLogger(__name__)

COLLECTION_NAME = "notes"
VECTOR_SIZE = 768  # nomic-embed-text outputs 768-dimensional vectors
CHUNK_MAX_WORDS = 512
CHUNK_OVERLAP_WORDS = 64

TEXT_EXTENSIONS = frozenset(
    {".txt", ".md", ".markdown", ".csv", ".json", ".html", ".htm", ".xml", ".yaml", ".yml", ".log"}
)
FILE_URL_PREFIXES = ("/api/file/", "/api/s3file/")


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""


@dataclass(frozen=True, slots=True)
class UpsertResult:
    """Outcome of indexing one note body or attachment."""

    ok: bool
    chunks_stored: int = 0
    error: str | None = None
    # Set when the input can never be indexed, e.g. an unsupported file type
    skipped: bool = False


class EmbeddingService:
    """Generate and store vector embeddings for notes and their attachments."""

    __slots__ = (
        "ollama_url", "qdrant", "model", "collection", "_upload_dir",
        "_fallback_url", "_fallback_api_key", "_fallback_model",
    )

    def __init__(
        self,
        ollama_url: str,
        qdrant_client: QdrantClient,
        upload_dir: Path,
        model: str = "nomic-embed-text",
        fallback_url: str = "",
        fallback_api_key: str = "",
        fallback_embedding_model: str = "",
    ) -> None:
        self.ollama_url = ollama_url
        self.qdrant = qdrant_client
        self.model = model
        self.collection = COLLECTION_NAME
        self._upload_dir = upload_dir
        self._fallback_url = fallback_url.rstrip("/") if fallback_url else ""
        self._fallback_api_key = fallback_api_key
        self._fallback_model = fallback_embedding_model or model

    def ensure_collection(self) -> None:
        """Create the Qdrant collection if it does not already exist."""
        if self.qdrant.collection_exists(self.collection):
            logger.info("Qdrant collection '%s' already exists", self.collection)
            return
        self.qdrant.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=VECTOR_SIZE, distance=Distance.COSINE),
        )
        logger.info("Created Qdrant collection '%s'", self.collection)

    async def rebuild_index(self, is_delete: bool = True) -> None:
        """Reset the vector index. With ``is_delete`` all vectors are dropped."""
        if is_delete and self.qdrant.collection_exists(self.collection):
            self.qdrant.delete_collection(self.collection)
            logger.info("Deleted Qdrant collection '%s'", self.collection)
        self.ensure_collection()

    async def upsert_note(
        self,
        note_id: int,
        content: str,
        created_at: datetime,
        updated_at: datetime,
    ) -> UpsertResult:
        """Replace the vectors of a note's body text."""
        if not content or not content.strip():
            return UpsertResult(ok=True)

        try:
            points = await self._build_points(
                content,
                {
                    "note_id": note_id,
                    "kind": "note",
                    "created_at": created_at.isoformat(),
                    "updated_at": updated_at.isoformat(),
                },
            )
        except EmbeddingError as exc:
            return UpsertResult(ok=False, error=str(exc))

        self._delete_points(note_id, kind="note")
        self.qdrant.upsert(collection_name=self.collection, points=points)
        return UpsertResult(ok=True, chunks_stored=len(points))

    async def upsert_attachment(
        self,
        note_id: int,
        file_path: str,
        updated_at: datetime,
    ) -> UpsertResult:
        """Replace the vectors of one text attachment of a note."""
        try:
            path = self.resolve_attachment_path(file_path)
        except ValueError as exc:
            return UpsertResult(ok=False, error=str(exc))

        if path.suffix.lower() not in TEXT_EXTENSIONS:
            return UpsertResult(
                ok=False,
                skipped=True,
                error=f"Unsupported attachment type: {path.suffix or path.name}",
            )
        if not path.is_file():
            return UpsertResult(ok=False, error=f"Attachment not found: {file_path}")

        text = path.read_text(encoding="utf-8", errors="replace")
        if not text.strip():
            return UpsertResult(ok=True)

        try:
            points = await self._build_points(
                text,
                {
                    "note_id": note_id,
                    "kind": "attachment",
                    "file_path": file_path,
                    "updated_at": updated_at.isoformat(),
                },
            )
        except EmbeddingError as exc:
            return UpsertResult(ok=False, error=str(exc))

        self._delete_points(note_id, kind="attachment", file_path=file_path)
        self.qdrant.upsert(collection_name=self.collection, points=points)
        return UpsertResult(ok=True, chunks_stored=len(points))

    def resolve_attachment_path(self, file_path: str) -> Path:
        """Map an attachment URL path onto the upload directory.

        Raises ValueError if the path would leave the upload directory.
        """
        decoded = unquote(file_path)
        for prefix in FILE_URL_PREFIXES:
            if decoded.startswith(prefix):
                decoded = decoded[len(prefix):]
                break
        root = self._upload_dir.resolve()
        candidate = (root / decoded.lstrip("/")).resolve()
        if not candidate.is_relative_to(root):
            raise ValueError(f"Attachment path escapes upload directory: {file_path!r}")
        return candidate

    async def _build_points(self, text: str, payload: dict) -> list[PointStruct]:
        points: list[PointStruct] = []
        for i, chunk in enumerate(self._chunk_text(text)):
            embedding = await self._get_embedding(chunk)
            points.append(
                PointStruct(
                    id=str(uuid4()),
                    vector=embedding,
                    payload={**payload, "chunk_index": i, "text": chunk},
                )
            )
        return points

    def _delete_points(self, note_id: int, kind: str, file_path: str | None = None) -> None:
        must = [
            models.FieldCondition(key="note_id", match=models.MatchValue(value=note_id)),
            models.FieldCondition(key="kind", match=models.MatchValue(value=kind)),
        ]
        if file_path is not None:
            must.append(
                models.FieldCondition(key="file_path", match=models.MatchValue(value=file_path))
            )
        self.qdrant.delete(
            collection_name=self.collection,
            points_selector=models.FilterSelector(filter=models.Filter(must=must)),
        )

    async def _get_embedding(self, text: str) -> list[float]:
        """Get embedding vector, trying Ollama then fallback."""
        try:
            return await self._get_embedding_ollama(text)
        except EmbeddingError:
            if not self._fallback_url:
                raise
            logger.info("Falling back to cloud API for embedding")
            return await self._get_embedding_openai(text)

    async def _get_embedding_ollama(self, text: str) -> list[float]:
        """Get embedding vector from Ollama."""
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.ollama_url}/api/embed",
                    json={"model": self.model, "input": text},
                )
                response.raise_for_status()
                data = response.json()
                # Newer Ollama /api/embed returns {"embeddings": [[...]]}
                if "embeddings" in data:
                    return data["embeddings"][0]
                return data["embedding"]
        except httpx.ConnectError as exc:
            raise EmbeddingError(
                f"Cannot connect to Ollama at {self.ollama_url}: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"Ollama returned HTTP {exc.response.status_code}: {exc}"
            ) from exc
        except (KeyError, IndexError) as exc:
            raise EmbeddingError(
                f"Unexpected response format from Ollama: {exc}"
            ) from exc

    async def _get_embedding_openai(self, text: str) -> list[float]:
        """Get embedding vector from OpenAI-compatible /embeddings endpoint."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._fallback_api_key}",
        }
        payload = {"model": self._fallback_model, "input": text}
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self._fallback_url}/embeddings",
                    headers=headers,
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
                return data["data"][0]["embedding"]
        except httpx.ConnectError as exc:
            raise EmbeddingError(f"Cannot connect to fallback at {self._fallback_url}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(f"Fallback returned HTTP {exc.response.status_code}: {exc}") from exc
        except (KeyError, IndexError) as exc:
            raise EmbeddingError(f"Unexpected response from fallback: {exc}") from exc

    @staticmethod
    def _chunk_text(
        text: str,
        max_words: int = CHUNK_MAX_WORDS,
        overlap: int = CHUNK_OVERLAP_WORDS,
    ) -> list[str]:
        """Split text into overlapping chunks by word count."""
        words = text.split()
        if len(words) <= max_words:
            return [text]

        # Guard against infinite loop
        if overlap >= max_words:
            overlap = 0

        chunks: list[str] = []
        start = 0
        while start < len(words):
            end = start + max_words
            chunks.append(" ".join(words[start:end]))
            start = end - overlap

        return chunks
