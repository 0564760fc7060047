"""ChromaDB wrapper for section-scoped chunk storage and querying."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "course_chunks"


def _get_client(persist_dir: str | Path):
    """Create a persistent ChromaDB client."""
    import chromadb

    return chromadb.PersistentClient(path=str(persist_dir))


def index_chunks(
    chunks: list[dict[str, Any]],
    persist_dir: str | Path,
    *,
    collection_name: str = DEFAULT_COLLECTION,
) -> int:
    """Embed and store chunks in ChromaDB, replacing any existing collection.

    Args:
        chunks: list of dicts with keys: source_id, section_id, text.
        persist_dir: directory for ChromaDB persistence.

    Returns:
        Number of chunks stored.
    """
    persist = Path(persist_dir)
    persist.mkdir(parents=True, exist_ok=True)

    client = _get_client(persist)

    try:
        client.delete_collection(collection_name)
    except Exception:
        logger.debug("No existing collection %s to replace", collection_name)

    collection = client.create_collection(
        name=collection_name,
        metadata={"hnsw:space": "cosine"},
    )

    if not chunks:
        return 0

    ids = [f"{c['section_id']}::{c['source_id']}" for c in chunks]
    documents = [c["text"] for c in chunks]
    metadatas = [{"source_id": c["source_id"], "section_id": c["section_id"]} for c in chunks]

    # ChromaDB embeds with its default model
    batch_size = 100
    for i in range(0, len(ids), batch_size):
        collection.add(
            ids=ids[i:i + batch_size],
            documents=documents[i:i + batch_size],
            metadatas=metadatas[i:i + batch_size],
        )

    logger.info("Stored %d chunks in ChromaDB at %s", len(ids), persist)
    return len(ids)


def query_chunks(
    query: str,
    persist_dir: str | Path,
    *,
    section_ids: list[str],
    n_results: int = 5,
    collection_name: str = DEFAULT_COLLECTION,
) -> list[dict[str, Any]]:
    """Query chunks whose ``section_id`` metadata is in *section_ids*.

    Returns list of dicts with keys: text, source_id, section_id, distance.
    Errors from the client propagate to the caller.
    """
    client = _get_client(persist_dir)
    collection = client.get_collection(collection_name)

    results = collection.query(
        query_texts=[query],
        n_results=n_results,
        where={"section_id": {"$in": list(section_ids)}},
    )

    items: list[dict[str, Any]] = []
    if results and results["documents"]:
        for i, doc in enumerate(results["documents"][0]):
            meta = results["metadatas"][0][i] if results["metadatas"] else {}
            distance = results["distances"][0][i] if results["distances"] else 0.0
            items.append({
                "text": doc,
                "source_id": meta.get("source_id", ""),
                "section_id": meta.get("section_id", ""),
                "distance": distance,
            })

    return items


def vector_store_exists(persist_dir: str | Path, *, collection_name: str = DEFAULT_COLLECTION) -> bool:
    """Check if a vector store collection exists at the given path."""
    persist = Path(persist_dir)
    if not persist.exists():
        return False
    try:
        client = _get_client(persist)
        client.get_collection(collection_name)
        return True
    except Exception:
        return False
