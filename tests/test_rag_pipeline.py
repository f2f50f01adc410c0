import asyncio

from graph_brain.embedder import EmbeddingBatcher
from graph_brain.graph_store import GraphStore
from graph_brain.llm_client import LLMClient
from graph_brain.models import GraphContext, PointItem
from graph_brain.prompts import DEFAULT_RAG_PROMPT, PromptRegistry
from graph_brain.rag_pipeline import (
    ANSWER_SYSTEM_PROMPT,
    GraphRAGPipeline,
    build_answer_prompt,
    format_graph_context,
)
from graph_brain.vector_store import VectorStoreManager


def _pipeline(chroma_client, neo4j_driver, fake_openai, embedding_backend, prompts=None):
    return GraphRAGPipeline(
        EmbeddingBatcher(embedding_backend),
        VectorStoreManager(chroma_client),
        GraphStore(neo4j_driver),
        LLMClient(fake_openai, model="gpt-5-mini"),
        prompts,
    )


def test_format_graph_context_single_edge():
    context = format_graph_context(
        [{"entity": {"name": "A"}, "relationship": {"type": "LIKES"}, "related_node": {"name": "B"}}]
    )
    assert context.nodes == ["A", "B"]
    assert context.edges == ["A LIKES B"]


def test_format_graph_context_dedupes_nodes_and_skips_incomplete():
    subgraph = [
        {"entity": {"name": "A"}, "relationship": {"type": "LIKES"}, "related_node": {"name": "B"}},
        {"entity": {"name": "B"}, "relationship": {"type": "KNOWS"}, "related_node": {"name": "A"}},
        {"entity": {"name": "C"}, "relationship": None, "related_node": {"name": "D"}},
        {"entity": None, "relationship": {"type": "X"}, "related_node": {"name": "E"}},
    ]
    context = format_graph_context(subgraph)
    assert context.nodes == ["A", "B"]
    assert context.edges == ["A LIKES B", "B KNOWS A"]


def test_answer_prompt_layout():
    prompt = build_answer_prompt("Header.", GraphContext(["A", "B"], ["A LIKES B", "B KNOWS C"]), "Who?")
    assert prompt == 'Header.\n\nNodes: A, B\n\nEdges: A LIKES B; B KNOWS C\n\nUser Query: "Who?"'


def test_graph_rag_run_uses_default_then_registered_header(
    chroma_client, neo4j_driver, fake_openai, embedding_backend
):
    prompts = PromptRegistry()
    pipeline = _pipeline(chroma_client, neo4j_driver, fake_openai, embedding_backend, prompts)
    fake_openai.replies.extend(["first answer", "second answer"])
    context = GraphContext(["A", "B"], ["A LIKES B"])

    assert asyncio.run(pipeline.graph_rag_run(context, "What does A like?")) == "first answer"
    prompts.set("rag", "Answer like a pirate.")
    assert asyncio.run(pipeline.graph_rag_run(context, "What does A like?")) == "second answer"

    first, second = fake_openai.requests
    assert first["messages"][0] == {"role": "system", "content": ANSWER_SYSTEM_PROMPT}
    assert first["messages"][1]["content"].startswith(DEFAULT_RAG_PROMPT)
    assert second["messages"][1]["content"].startswith("Answer like a pirate.")
    assert "response_format" not in first


def test_graph_rag_run_returns_empty_string_without_content(
    chroma_client, neo4j_driver, fake_openai, embedding_backend
):
    fake_openai.replies.append(None)
    pipeline = _pipeline(chroma_client, neo4j_driver, fake_openai, embedding_backend)
    assert asyncio.run(pipeline.graph_rag_run(GraphContext(), "anything?")) == ""


def test_retriever_search_drops_hits_without_id(
    chroma_client, neo4j_driver, fake_openai, embedding_backend
):
    pipeline = _pipeline(chroma_client, neo4j_driver, fake_openai, embedding_backend)
    store = pipeline.vectors
    asyncio.run(store.ensure_collection("docs", 4))
    asyncio.run(
        store.upsert_vectors_with_payload(
            "docs",
            [
                PointItem(id="p1", vector=embedding_backend.vector("red button"), payload={"id": "c1"}),
                PointItem(id="p2", vector=embedding_backend.vector("blue modal"), payload={"id": 42}),
            ],
        )
    )
    related = [{"entity": {"id": "c1", "name": "Button"}, "relationship": {"type": "USES"},
                "related_node": {"id": "c9", "name": "Theme"}}]
    neo4j_driver.responses.append(
        [{"s1": related[0]["entity"], "r1": related[0]["relationship"], "t1": related[0]["related_node"],
          "s2": None, "r2": None, "t2": None}]
    )

    result = asyncio.run(pipeline.retriever_search("docs", "red button", top_k=2))

    assert result.ids == ["c1"]
    assert result.subgraph == related
    assert neo4j_driver.calls[0][1]["entity_ids"] == ["c1"]
    assert embedding_backend.batches == [["red button"]]


def test_query_runs_search_context_and_answer(
    chroma_client, neo4j_driver, fake_openai, embedding_backend
):
    pipeline = _pipeline(chroma_client, neo4j_driver, fake_openai, embedding_backend)
    asyncio.run(pipeline.vectors.ensure_collection("docs", 4))
    asyncio.run(
        pipeline.vectors.upsert_embeddings("docs", ["c1"], [embedding_backend.vector("button")])
    )
    neo4j_driver.responses.append(
        [{"s1": {"id": "c1", "name": "Button"}, "r1": {"type": "PART_OF"}, "t1": {"id": "f", "name": "Form"},
          "s2": None, "r2": None, "t2": None}]
    )
    fake_openai.replies.append("A button is part of a form.")

    result = asyncio.run(pipeline.query("docs", "button", top_k=1))

    assert result.answer == "A button is part of a form."
    assert result.context.edges == ["Button PART_OF Form"]
    assert "Edges: Button PART_OF Form" in fake_openai.requests[0]["messages"][1]["content"]


def test_prompt_registry_crud():
    prompts = PromptRegistry()
    prompts.set("rag", "one")
    prompts.set("rag", "two")
    prompts.set("extract", "three")

    assert prompts.get("rag") == "two"
    assert prompts.list() == [{"kind": "rag", "prompt": "two"}, {"kind": "extract", "prompt": "three"}]
    assert prompts.delete("rag") is True
    assert prompts.delete("rag") is False
    assert prompts.get("rag") is None
    assert PromptRegistry().list() == []
