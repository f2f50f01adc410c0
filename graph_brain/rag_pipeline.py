from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from .embedder import EmbeddingBatcher
from .graph_store import GraphStore
from .llm_client import LLMClient
from .models import GraphContext, RetrievalResult
from .prompts import DEFAULT_RAG_PROMPT, RAG_PROMPT_KIND, PromptRegistry
from .vector_store import VectorStoreManager


logger = logging.getLogger(__name__)


ANSWER_SYSTEM_PROMPT = "Provide the answer for the following question:"


def format_graph_context(subgraph: Iterable[Mapping[str, Any]]) -> GraphContext:
    """
    Reduce subgraph triples to unique node names (first-seen order) and
    ``"<entity> <type> <related>"`` edge strings. Incomplete triples are skipped.
    """
    nodes: Dict[str, None] = {}
    edges: List[str] = []
    for entry in subgraph:
        entity = entry.get("entity")
        related = entry.get("related_node")
        relationship = entry.get("relationship")
        if not entity or not related or not relationship:
            continue
        entity_name = entity.get("name")
        related_name = related.get("name")
        nodes.setdefault(entity_name, None)
        nodes.setdefault(related_name, None)
        edges.append(f"{entity_name} {relationship.get('type')} {related_name}")
    return GraphContext(nodes=list(nodes), edges=edges)


def build_answer_prompt(header: str, context: GraphContext, user_query: str) -> str:
    return (
        f"{header}\n\n"
        f"Nodes: {', '.join(str(n) for n in context.nodes)}\n\n"
        f"Edges: {'; '.join(context.edges)}\n\n"
        f'User Query: "{user_query}"'
    )


@dataclass
class GraphRAGAnswer:
    answer: str
    context: GraphContext
    retrieval: RetrievalResult


class GraphRAGPipeline:
    """
    Vector search for seed entities, graph expansion around them, and an LLM
    answer grounded in the resulting node/edge context.
    """

    def __init__(
        self,
        embeddings: EmbeddingBatcher,
        vectors: VectorStoreManager,
        graph: GraphStore,
        llm: LLMClient,
        prompts: Optional[PromptRegistry] = None,
    ):
        self.embeddings = embeddings
        self.vectors = vectors
        self.graph = graph
        self.llm = llm
        self.prompts = prompts or PromptRegistry()

    async def retriever_search(self, collection: str, query: str, top_k: int = 5) -> RetrievalResult:
        vector = await self.embeddings.embed_one(query)
        hits = await self.vectors.search_top_k(collection, vector, top_k)

        ids: List[str] = []
        for hit in hits:
            hit_id = hit.payload.get("id")
            if isinstance(hit_id, str) and hit_id:
                ids.append(hit_id)
            else:
                logger.warning("Dropping hit %s without a usable payload id", hit.id)

        subgraph = await self.graph.fetch_related_graph(ids)
        logger.info(
            "Retriever search in '%s' (top_k=%d): %d id(s), %d triple(s)",
            collection,
            top_k,
            len(ids),
            len(subgraph),
        )
        return RetrievalResult(ids=ids, subgraph=subgraph)

    async def graph_rag_run(self, context: GraphContext, user_query: str) -> str:
        """Answer ``user_query`` from the graph context; "" if the model says nothing."""
        header = self.prompts.get(RAG_PROMPT_KIND, DEFAULT_RAG_PROMPT)
        prompt = build_answer_prompt(header, context, user_query)
        answer = await self.llm.complete(ANSWER_SYSTEM_PROMPT, prompt)
        logger.info("LLM answered (response length=%d chars)", len(answer))
        return answer

    async def query(self, collection: str, question: str, top_k: int = 5) -> GraphRAGAnswer:
        retrieval = await self.retriever_search(collection, question, top_k)
        context = format_graph_context(retrieval.subgraph)
        answer = await self.graph_rag_run(context, question)
        return GraphRAGAnswer(answer=answer, context=context, retrieval=retrieval)


__all__ = [
    "ANSWER_SYSTEM_PROMPT",
    "GraphRAGAnswer",
    "GraphRAGPipeline",
    "build_answer_prompt",
    "format_graph_context",
]
