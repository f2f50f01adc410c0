"""
Collection and point management on top of Chroma.

Every collection is created with cosine distance and records its vector
dimension in the collection metadata, so ``ensure_collection`` can tell when
an existing collection was built for a different embedding model.
Point ids are the same strings used as entity ids in the graph.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import chromadb
from chromadb.api import ClientAPI
from chromadb.errors import NotFoundError

from .config import Settings
from .models import PointItem


logger = logging.getLogger(__name__)

DISTANCE = "cosine"
_DIMENSION_KEY = "dimension"
_SPACE_KEY = "hnsw:space"
# Chroma metadata only holds scalars; other payload values are stored as JSON
# and their keys listed under this reserved key.
_JSON_KEYS = "_json_keys"


class VectorValidationError(ValueError):
    """Points rejected locally, before any request reaches the store."""


class VectorStoreError(RuntimeError):
    """An upstream vector store failure, chained to the original exception."""


@dataclass
class CollectionInfo:
    name: str
    dimension: Optional[int]
    distance: str
    points_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredPoint:
    id: str
    payload: Dict[str, Any]
    vector: Optional[List[float]] = None


@dataclass
class ScoredPoint:
    id: str
    distance: float
    payload: Dict[str, Any]

    @property
    def score(self) -> float:
        """Cosine similarity (1 - cosine distance)."""
        return 1.0 - self.distance


@dataclass
class UpsertReport:
    inserted: int
    skipped: int


def build_chroma_client(settings: Settings) -> ClientAPI:
    if settings.uses_chroma_server:
        logger.info(
            "Initialising Chroma HttpClient at %s:%d",
            settings.chroma_host,
            settings.chroma_port,
        )
        return chromadb.HttpClient(host=settings.chroma_host, port=settings.chroma_port)
    logger.info("Initialising Chroma PersistentClient at %s", settings.chroma_db_path)
    return chromadb.PersistentClient(path=str(settings.chroma_db_path))


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def validate_points(items: Sequence[PointItem]) -> int:
    """
    Check ids and vectors of ``items`` and return their common dimension.

    The dimension is taken from the first item. Raises VectorValidationError on
    an empty id, a mismatched dimension, or a non-numeric / NaN component.
    """
    if not items:
        raise VectorValidationError("No points provided for upsert.")
    dimension = len(items[0].vector or [])
    if not dimension:
        raise VectorValidationError("First vector is empty.")
    for index, item in enumerate(items):
        if not isinstance(item.id, str) or not item.id:
            raise VectorValidationError(f"Missing id at index {index}.")
        if item.payload and _JSON_KEYS in item.payload:
            raise VectorValidationError(
                f"Payload at index {index} uses the reserved key '{_JSON_KEYS}'."
            )
        vector = item.vector
        if not isinstance(vector, (list, tuple)) or len(vector) != dimension:
            actual = len(vector) if isinstance(vector, (list, tuple)) else "N/A"
            raise VectorValidationError(
                f"Vector at index {index} has invalid dimension {actual} "
                f"(expected {dimension})."
            )
        if not all(_is_number(component) for component in vector):
            raise VectorValidationError(
                f"Vector at index {index} contains non-number/NaN values."
            )
    return dimension


def _encode_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    json_keys: List[str] = []
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            metadata[key] = value
        else:
            metadata[key] = json.dumps(value)
            json_keys.append(key)
    if json_keys:
        metadata[_JSON_KEYS] = json.dumps(json_keys)
    return metadata


def _decode_payload(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not metadata:
        return {}
    payload = dict(metadata)
    json_keys = json.loads(payload.pop(_JSON_KEYS, "[]"))
    for key in json_keys:
        if key in payload:
            payload[key] = json.loads(payload[key])
    return payload


def _configured_dimension(collection: Any) -> Optional[int]:
    value = (collection.metadata or {}).get(_DIMENSION_KEY)
    return int(value) if value is not None else None


def _stored_dimension(collection: Any) -> Optional[int]:
    """Length of one stored vector, or None for an empty collection."""
    embeddings = collection.get(limit=1, include=["embeddings"]).get("embeddings")
    if embeddings is None or len(embeddings) == 0:
        return None
    return len(embeddings[0])


def _unique_ids(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


def collapse_duplicates(items: Sequence[PointItem]) -> List[PointItem]:
    """One item per id, keeping the first position and the last value."""
    latest: Dict[str, PointItem] = {}
    for item in items:
        latest[item.id] = item
    if len(latest) != len(items):
        logger.debug("Collapsed %d duplicate point id(s)", len(items) - len(latest))
    return list(latest.values())


class VectorStoreManager:
    """Collection lifecycle and point operations against one Chroma client."""

    def __init__(self, client: ClientAPI):
        self._client = client

    # ------- collections -------

    def _create(self, name: str, dimension: int) -> None:
        self._client.create_collection(
            name=name,
            metadata={_SPACE_KEY: DISTANCE, _DIMENSION_KEY: dimension},
        )

    async def ensure_collection(self, name: str, dimension: int) -> None:
        """
        Make sure ``name`` exists with ``dimension``.

        An existing collection with a different dimension is deleted and
        recreated, which drops all of its points.
        """
        if dimension < 1:
            raise VectorValidationError(f"Invalid collection dimension {dimension}.")

        def _run() -> None:
            try:
                collection = self._client.get_collection(name=name)
            except NotFoundError:
                logger.info("Collection '%s' not found. Creating it now...", name)
                self._create(name, dimension)
                logger.info("Collection '%s' created (dim=%d).", name, dimension)
                return

            configured = _configured_dimension(collection)
            if configured is None:
                # Created elsewhere without our metadata: judge by a stored vector.
                stored = _stored_dimension(collection)
                if stored == dimension:
                    logger.warning(
                        "Collection '%s' has no recorded dimension; its vectors match dim=%d, keeping it.",
                        name,
                        dimension,
                    )
                    return
                configured = stored
            if configured != dimension:
                logger.warning(
                    "Collection '%s' exists with dim=%s, but required=%d. Recreating collection...",
                    name,
                    configured,
                    dimension,
                )
                self._client.delete_collection(name=name)
                self._create(name, dimension)
                logger.info("Collection '%s' recreated with dim=%d.", name, dimension)
            else:
                logger.info(
                    "Collection '%s' already exists (dim=%s); nothing to do.",
                    name,
                    configured,
                )

        await asyncio.to_thread(_run)

    async def list_collections(self) -> List[str]:
        collections = await asyncio.to_thread(self._client.list_collections)
        return [c.name for c in collections]

    async def get_collection_info(self, name: str) -> CollectionInfo:
        def _run() -> CollectionInfo:
            collection = self._client.get_collection(name=name)
            metadata = dict(collection.metadata or {})
            return CollectionInfo(
                name=collection.name,
                dimension=_configured_dimension(collection),
                distance=str(metadata.get(_SPACE_KEY, DISTANCE)),
                points_count=collection.count(),
                metadata=metadata,
            )

        return await asyncio.to_thread(_run)

    async def delete_collection(self, name: str) -> None:
        await asyncio.to_thread(self._client.delete_collection, name=name)
        logger.info("Collection '%s' deleted.", name)

    # ------- points -------

    def _upsert(self, name: str, items: Sequence[PointItem], dimension: int) -> None:
        ids = [item.id for item in items]
        embeddings = [[float(c) for c in item.vector] for item in items]
        metadatas = []
        for item in items:
            payload = dict(item.payload) if item.payload else {}
            payload.setdefault("id", item.id)
            metadatas.append(_encode_payload(payload))

        try:
            collection = self._client.get_collection(name=name)
            collection.upsert(ids=ids, embeddings=embeddings, metadatas=metadatas)
        except Exception as exc:
            configured = self._dimension_for_diagnostics(name)
            logger.error(
                "Upsert into '%s' failed: %s (configured dim=%s, vector dim=%d, points=%d)",
                name,
                exc,
                configured,
                dimension,
                len(items),
            )
            raise VectorStoreError(
                f"Upsert of {len(items)} point(s) into '{name}' failed "
                f"(configured dim={configured}, vector dim={dimension})"
            ) from exc
        logger.info("Upserted %d point(s) into '%s'.", len(items), name)

    def _dimension_for_diagnostics(self, name: str) -> Optional[int]:
        try:
            return _configured_dimension(self._client.get_collection(name=name))
        except Exception as exc:
            logger.debug("Could not read dimension of '%s': %s", name, exc)
            return None

    async def upsert_vectors_with_payload(self, name: str, items: Sequence[PointItem]) -> None:
        """
        Overwrite-or-insert ``items``. All vectors must share the first item's
        dimension; any invalid item aborts the call before the store is touched.
        A payload without an ``id`` key gets the point id added.
        """
        if not items:
            return
        dimension = validate_points(items)
        await asyncio.to_thread(self._upsert, name, collapse_duplicates(items), dimension)

    async def upsert_embeddings(
        self, name: str, ids: Sequence[str], vectors: Sequence[Sequence[float]]
    ) -> None:
        """Pair ``ids`` with ``vectors`` (up to the shorter list) and upsert with payload ``{id}``."""
        count = min(len(ids), len(vectors))
        items = [
            PointItem(id=ids[i], vector=list(vectors[i]), payload={"id": ids[i]})
            for i in range(count)
        ]
        dimension = validate_points(items)
        await asyncio.to_thread(self._upsert, name, collapse_duplicates(items), dimension)

    async def retrieve_existing_ids(self, name: str, ids: Iterable[str]) -> Set[str]:
        ids = _unique_ids(ids)
        if not ids:
            return set()

        def _run() -> Set[str]:
            try:
                collection = self._client.get_collection(name=name)
                result = collection.get(ids=ids, include=[])
            except Exception as exc:
                logger.error("Id lookup in '%s' failed: %s (ids=%d)", name, exc, len(ids))
                raise VectorStoreError(
                    f"Lookup of {len(ids)} id(s) in '{name}' failed"
                ) from exc
            return {str(point_id) for point_id in result["ids"]}

        return await asyncio.to_thread(_run)

    async def upsert_if_missing(self, name: str, items: Sequence[PointItem]) -> UpsertReport:
        """
        Insert only the items whose id is not in the collection yet.

        Repeated ids in ``items`` count once, with the last occurrence winning.
        """
        items = collapse_duplicates(items)
        existing = await self.retrieve_existing_ids(name, [item.id for item in items])
        missing = [item for item in items if item.id not in existing]
        if missing:
            await self.upsert_vectors_with_payload(name, missing)
        report = UpsertReport(inserted=len(missing), skipped=len(items) - len(missing))
        logger.info(
            "upsert_if_missing on '%s': inserted=%d skipped=%d",
            name,
            report.inserted,
            report.skipped,
        )
        return report

    async def search_top_k(
        self, name: str, query_vector: Sequence[float], k: int = 5
    ) -> List[ScoredPoint]:
        """Return the ``k`` nearest points (by cosine distance) with their payloads."""
        if k < 1:
            return []
        if not query_vector or not all(_is_number(c) for c in query_vector):
            raise VectorValidationError("Query vector is empty or contains non-number/NaN values.")

        def _run() -> List[ScoredPoint]:
            collection = self._client.get_collection(name=name)
            available = collection.count()
            if available == 0:
                return []
            result = collection.query(
                query_embeddings=[[float(c) for c in query_vector]],
                n_results=min(k, available),
                include=["metadatas", "distances"],
            )
            ids = result["ids"][0]
            distances = result["distances"][0]
            metadatas = result["metadatas"][0]
            return [
                ScoredPoint(id=str(pid), distance=float(dist), payload=_decode_payload(meta))
                for pid, dist, meta in zip(ids, distances, metadatas)
            ]

        hits = await asyncio.to_thread(_run)
        logger.info("Search in '%s' returned %d hit(s) (k=%d)", name, len(hits), k)
        return hits

    async def get_points(self, name: str, ids: Sequence[str]) -> List[StoredPoint]:
        if not ids:
            return []

        def _run() -> List[StoredPoint]:
            collection = self._client.get_collection(name=name)
            result = collection.get(ids=_unique_ids(ids), include=["metadatas", "embeddings"])
            embeddings = result.get("embeddings")
            if embeddings is None:
                embeddings = [None] * len(result["ids"])
            return [
                StoredPoint(
                    id=str(pid),
                    payload=_decode_payload(meta),
                    vector=[float(c) for c in vector] if vector is not None else None,
                )
                for pid, meta, vector in zip(result["ids"], result["metadatas"], embeddings)
            ]

        return await asyncio.to_thread(_run)

    async def delete_points(self, name: str, ids: Sequence[str]) -> None:
        if not ids:
            return

        def _run() -> None:
            self._client.get_collection(name=name).delete(ids=_unique_ids(ids))

        await asyncio.to_thread(_run)
        logger.info("Deleted %d point(s) from '%s'.", len(ids), name)

    async def delete_all_points(self, name: str) -> None:
        """Remove every point but keep the collection and its configuration."""

        def _run() -> int:
            collection = self._client.get_collection(name=name)
            ids = collection.get(include=[])["ids"]
            if ids:
                collection.delete(ids=ids)
            return len(ids)

        removed = await asyncio.to_thread(_run)
        logger.info("Cleared %d point(s) from '%s'.", removed, name)


__all__ = [
    "CollectionInfo",
    "ScoredPoint",
    "StoredPoint",
    "UpsertReport",
    "VectorStoreError",
    "VectorStoreManager",
    "VectorValidationError",
    "build_chroma_client",
    "collapse_duplicates",
    "validate_points",
]
