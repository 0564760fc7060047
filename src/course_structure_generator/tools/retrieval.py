"""Section-scoped retrieval over the document chunk store."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from ..errors import RetrievalUnavailable
from ..models import AnalysisArtifact, RetrievalConfig, RetrievedChunk
from .vector_store import DEFAULT_COLLECTION, query_chunks, vector_store_exists

logger = logging.getLogger(__name__)


class RetrievalStore(Protocol):
    """Blocking store interface. Called from a worker thread."""

    def query(self, text: str, section_ids: list[str], limit: int) -> list[RetrievedChunk]: ...


class ChromaRetrievalStore:
    """RetrievalStore backed by a persistent ChromaDB collection."""

    def __init__(self, persist_dir: str | Path, *, collection_name: str = DEFAULT_COLLECTION) -> None:
        self.persist_dir = Path(persist_dir)
        self.collection_name = collection_name

    @classmethod
    def from_config(cls, config: RetrievalConfig, base_dir: str | Path = ".") -> ChromaRetrievalStore:
        """Store for *config*, with ``persist_dir`` resolved against *base_dir*."""
        return cls(Path(base_dir) / config.persist_dir, collection_name=config.collection)

    def exists(self) -> bool:
        return vector_store_exists(self.persist_dir, collection_name=self.collection_name)

    def query(self, text: str, section_ids: list[str], limit: int) -> list[RetrievedChunk]:
        rows = query_chunks(
            text,
            self.persist_dir,
            section_ids=section_ids,
            n_results=limit,
            collection_name=self.collection_name,
        )
        return [
            RetrievedChunk(
                text=row["text"],
                source_id=str(row["source_id"]),
                section_id=str(row["section_id"]),
                # cosine distance -> similarity
                relevance_score=max(0.0, 1.0 - float(row["distance"])),
            )
            for row in rows
        ]


class RetrievalGateway:
    """Answers ``search_documents`` tool calls, scoped to one section.

    A query for section S sees only chunks tagged with S or one of S's
    declared prerequisites. The scope is enforced twice: as a store filter
    and again on the returned chunks.
    """

    def __init__(
        self,
        store: RetrievalStore,
        artifact: AnalysisArtifact,
        *,
        max_limit: int = 10,
    ) -> None:
        self.store = store
        self.max_limit = max_limit
        self._prerequisites = {s.section_id: list(s.prerequisites) for s in artifact.sections}

    def scope(self, section_id: str) -> list[str]:
        if section_id not in self._prerequisites:
            raise KeyError(f"Unknown section: {section_id}")
        return [section_id, *self._prerequisites[section_id]]

    async def search(self, query: str, section_id: str, limit: int) -> list[RetrievedChunk]:
        """Return at most *limit* chunks relevant to *query* within the section scope.

        Zero results is a valid answer.

        Raises:
            RetrievalUnavailable: if the store cannot be queried.
        """
        scope = self.scope(section_id)
        limit = max(1, min(limit, self.max_limit))
        try:
            chunks = await asyncio.to_thread(self.store.query, query, scope, limit)
        except Exception as e:
            raise RetrievalUnavailable(f"Retrieval store query failed: {e}") from e

        allowed = set(scope)
        scoped = [c for c in chunks if c.section_id in allowed]
        dropped = len(chunks) - len(scoped)
        if dropped:
            logger.warning(
                "Dropped %d out-of-scope chunk(s) for section %s", dropped, section_id,
                extra={"section_id": section_id, "dropped": dropped},
            )
        scoped.sort(key=lambda c: c.relevance_score, reverse=True)
        return scoped[:limit]
