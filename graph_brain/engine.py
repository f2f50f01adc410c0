from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from chromadb.api import ClientAPI
from neo4j import Driver

from .config import Settings, get_settings
from .embedder import EmbeddingBackend, EmbeddingBatcher, build_embedding_backend
from .extraction import GraphExtractor
from .graph_repository import AdvancedGraphRepository
from .graph_store import GraphConfig, GraphStore, build_neo4j_driver
from .ingestion import IngestionFacade
from .llm_client import LLMClient
from .models import ExtractedGraph, PointItem
from .prompts import PromptRegistry
from .rag_pipeline import GraphRAGAnswer, GraphRAGPipeline
from .vector_store import VectorStoreManager, build_chroma_client


logger = logging.getLogger(__name__)


class BrainEngine:
    """
    Wires the stores, the LLM and the pipelines together.

    Clients are created once (``from_settings``) or handed in by the caller,
    then shared by every component of this engine.
    """

    def __init__(
        self,
        llm: LLMClient,
        embedding_backend: EmbeddingBackend,
        chroma_client: ClientAPI,
        neo4j_driver: Driver,
        neo4j_database: Optional[str] = None,
        prompts: Optional[PromptRegistry] = None,
        max_tokens_per_batch: int = 7000,
    ):
        self._driver = neo4j_driver
        self.prompts = prompts or PromptRegistry()
        self.llm = llm
        self.embeddings = EmbeddingBatcher(embedding_backend, max_tokens_per_batch)
        self.vectors = VectorStoreManager(chroma_client)
        self.graph = GraphStore(neo4j_driver, neo4j_database)
        self.repository = AdvancedGraphRepository(neo4j_driver, neo4j_database)
        self.extractor = GraphExtractor(llm, self.prompts)
        self.retrieval = GraphRAGPipeline(
            self.embeddings, self.vectors, self.graph, llm, self.prompts
        )
        self.ingestion = IngestionFacade(
            self.embeddings, self.vectors, self.graph, self.repository, self.extractor
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BrainEngine":
        settings = settings or get_settings()
        logger.info(
            "Building engine: llm=%s embeddings=%s neo4j=%s",
            settings.llm_model_name,
            settings.embedding_backend,
            settings.neo4j_uri,
        )
        return cls(
            llm=LLMClient.from_settings(settings),
            embedding_backend=build_embedding_backend(settings),
            chroma_client=build_chroma_client(settings),
            neo4j_driver=build_neo4j_driver(GraphConfig.from_settings(settings)),
            neo4j_database=settings.neo4j_database,
            max_tokens_per_batch=settings.embedding_max_tokens_per_batch,
        )

    def close(self) -> None:
        self._driver.close()

    # ------- convenience passthroughs -------

    async def ensure_collection(self, name: str, dimension: int) -> None:
        await self.vectors.ensure_collection(name, dimension)

    async def upsert_vectors(self, collection: str, items: Sequence[PointItem]) -> None:
        await self.vectors.upsert_vectors_with_payload(collection, items)

    async def create_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        return await self.embeddings.embed(texts)

    async def upsert_entity(
        self,
        entity_id: str,
        name: str,
        labels: Optional[Sequence[str]] = None,
        props: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.graph.upsert_entity(entity_id, name, labels, props)

    async def upsert_relationship(
        self, source_id: str, target_id: str, rel_type: str, props: Optional[Dict[str, Any]] = None
    ) -> bool:
        return await self.graph.upsert_relationship(source_id, target_id, rel_type, props)

    async def ingest(self, request: Mapping[str, Any]) -> None:
        await self.ingestion.ingest(request)

    async def ingest_fragment(self, collection: str, fragment_id: str, fragment, component=None) -> None:
        await self.ingestion.ingest_fragment(collection, fragment_id, fragment, component)

    async def ingest_fragments(self, collection: str, items) -> None:
        await self.ingestion.ingest_fragments(collection, items)

    async def ingest_text(self, collection: str, raw_text: str) -> ExtractedGraph:
        return await self.ingestion.ingest_text(collection, raw_text)

    async def query(self, collection: str, question: str, top_k: int = 5) -> GraphRAGAnswer:
        return await self.retrieval.query(collection, question, top_k)


__all__ = ["BrainEngine"]
