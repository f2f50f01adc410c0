"""
Ingestion entry points that keep the vector store and the graph in step.

A fragment is written to both stores under the same id: its description is
embedded into the collection (payload ``{id, category, tags}``) and an
``Entity:Component`` node with that id is merged into the graph. Requests
are validated in full before the first side effect.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .embedder import EmbeddingBatcher
from .extraction import GraphExtractor
from .graph_repository import GraphRepository
from .graph_store import GraphStore
from .models import (
    COMPONENT_LABELS,
    ComponentInput,
    ComponentMeta,
    ExtractedGraph,
    Fragment,
    FragmentItem,
    IngestRequest,
    PointItem,
    RelationshipInput,
    VectorItem,
)
from .vector_store import UpsertReport, VectorStoreManager


logger = logging.getLogger(__name__)


def _component_props(
    category: Optional[str], tags: Optional[List[str]], extra: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    props: Dict[str, Any] = {"category": category, "tags": tags}
    props.update(extra or {})
    return {key: value for key, value in props.items() if value is not None}


class IngestionFacade:
    def __init__(
        self,
        embeddings: EmbeddingBatcher,
        vectors: VectorStoreManager,
        graph: GraphStore,
        repository: GraphRepository,
        extractor: Optional[GraphExtractor] = None,
    ):
        self.embeddings = embeddings
        self.vectors = vectors
        self.graph = graph
        self.repository = repository
        self.extractor = extractor

    async def _embed_and_store(self, collection: str, ids: Sequence[str], texts: Sequence[str],
                               payloads: Sequence[Dict[str, Any]]) -> UpsertReport:
        """One batching pass, one collection check, then an idempotent upsert."""
        vectors = await self.embeddings.embed(list(texts))
        await self.vectors.ensure_collection(collection, len(vectors[0]))
        items = [
            PointItem(id=point_id, vector=vector, payload=payload)
            for point_id, vector, payload in zip(ids, vectors, payloads)
        ]
        return await self.vectors.upsert_if_missing(collection, items)

    # ------- fragments -------

    async def ingest_fragment(
        self,
        collection: str,
        fragment_id: str,
        fragment: Union[Fragment, Mapping[str, Any]],
        component: Union[ComponentMeta, Mapping[str, Any], None] = None,
    ) -> None:
        """Store one fragment in both stores under ``fragment_id``."""
        await self.ingest_fragments(
            collection,
            [{"id": fragment_id, "fragment": fragment, "component": component}],
        )

    async def ingest_fragments(
        self,
        collection: str,
        items: Sequence[Union[FragmentItem, Mapping[str, Any]]],
    ) -> None:
        """
        Batched ingest_fragment: every item is validated first, then all
        descriptions share one embedding pass and one collection check.
        """
        if not items:
            return
        validated = [FragmentItem.model_validate(_plain(item)) for item in items]

        await self._embed_and_store(
            collection,
            [item.id for item in validated],
            [item.fragment.description for item in validated],
            [
                {"id": item.id, "category": item.fragment.category, "tags": item.fragment.tags}
                for item in validated
            ],
        )
        for item in validated:
            component = item.component or ComponentMeta(name=item.id)
            await self.graph.upsert_entity(
                item.id,
                component.name,
                COMPONENT_LABELS,
                _component_props(
                    component.category or item.fragment.category,
                    component.tags or item.fragment.tags,
                    component.props,
                ),
            )
        logger.info("Ingested %d fragment(s) into '%s'", len(validated), collection)

    # ------- generic request -------

    async def ingest_vector_items(self, collection: str, items: Sequence[VectorItem]) -> UpsertReport:
        if not items:
            return UpsertReport(inserted=0, skipped=0)
        return await self._embed_and_store(
            collection,
            [item.id for item in items],
            [item.description for item in items],
            [item.payload or {"id": item.id} for item in items],
        )

    async def ingest_components(
        self,
        components: Sequence[ComponentInput],
        relationships: Sequence[RelationshipInput] = (),
    ) -> None:
        """Upsert components and relationships one by one (each call commits on its own)."""
        await self.repository.ensure_unique_id_constraint()
        for component in components:
            await self.graph.upsert_entity(
                component.id,
                component.name,
                COMPONENT_LABELS,
                _component_props(component.category, component.tags, component.props),
            )
        for rel in relationships:
            await self.graph.upsert_relationship(
                rel.source_id, rel.target_id, rel.type, rel.props or {}
            )

    async def ingest(self, request: Union[IngestRequest, Mapping[str, Any]]) -> None:
        request = IngestRequest.model_validate(_plain(request))
        if request.vector_items:
            await self.ingest_vector_items(request.collection, request.vector_items)
        if request.graph_entities or request.relationships:
            await self.ingest_components(
                request.graph_entities or [], request.relationships or []
            )

    # ------- raw text -------

    async def ingest_text(self, collection: str, raw_text: str) -> ExtractedGraph:
        """
        Extract entities and relationships from ``raw_text`` with the LLM,
        merge them into the graph and embed each entity name under its id.
        """
        if self.extractor is None:
            raise RuntimeError("ingest_text needs a GraphExtractor")
        extracted = await self.extractor.extract(raw_text)
        if not extracted.nodes:
            logger.info("Nothing extracted from text; no writes performed")
            return extracted

        await self.graph.ingest_extraction(extracted.nodes, extracted.relationships)
        names = list(extracted.nodes)
        ids = [extracted.nodes[name] for name in names]
        await self._embed_and_store(
            collection, ids, names, [{"id": i, "name": n} for i, n in zip(ids, names)]
        )
        return extracted


def _plain(value: Any) -> Any:
    """Turn nested pydantic models into plain data before re-validation."""
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


__all__ = ["IngestionFacade"]
