from __future__ import annotations

import json
import logging
import uuid
from typing import Callable, Optional

from pydantic import ValidationError

from .llm_client import LLMClient
from .models import ExtractedGraph, GraphExtraction, Relationship
from .prompts import DEFAULT_EXTRACT_PROMPT, EXTRACT_PROMPT_KIND, PromptRegistry


logger = logging.getLogger(__name__)


class ExtractionError(ValueError):
    """The model's answer could not be turned into a graph."""


def parse_extraction(raw: str) -> GraphExtraction:
    """
    Parse and validate a model response against the ``{graph: [...]}`` contract.

    Nothing is repaired: empty content, invalid JSON and schema violations
    all raise ExtractionError (schema errors chain the pydantic error).
    """
    if not raw or not raw.strip():
        raise ExtractionError("Model returned empty content")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Model returned invalid JSON: {exc}") from exc
    try:
        return GraphExtraction.model_validate(data)
    except ValidationError as exc:
        raise ExtractionError(f"Model output does not match the graph schema: {exc}") from exc


def normalize_extraction(
    extraction: GraphExtraction,
    new_id: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> ExtractedGraph:
    """
    Assign one id per distinct node name (in order of first appearance) and
    build relationships for triples that have both a target and a type.
    """
    result = ExtractedGraph()
    for triple in extraction.graph:
        if triple.node and triple.node not in result.nodes:
            result.nodes[triple.node] = new_id()
        if triple.target_node and triple.target_node not in result.nodes:
            result.nodes[triple.target_node] = new_id()
        if triple.node and triple.target_node and triple.relationship:
            result.relationships.append(
                Relationship(
                    source=result.nodes[triple.node],
                    target=result.nodes[triple.target_node],
                    type=triple.relationship,
                )
            )
    return result


class GraphExtractor:
    """Ask the LLM for relationship triples and normalise them."""

    def __init__(self, llm: LLMClient, prompts: Optional[PromptRegistry] = None):
        self.llm = llm
        self.prompts = prompts or PromptRegistry()

    async def extract(self, raw_text: str) -> ExtractedGraph:
        system = self.prompts.get(EXTRACT_PROMPT_KIND, DEFAULT_EXTRACT_PROMPT)
        content = await self.llm.complete(
            system,
            f"Extract nodes and relationships from the following text:\n{raw_text}",
            json_mode=True,
        )
        graph = normalize_extraction(parse_extraction(content))
        logger.info(
            "Extracted %d node(s) and %d relationship(s) from %d chars of text",
            len(graph.nodes),
            len(graph.relationships),
            len(raw_text),
        )
        return graph


__all__ = ["ExtractionError", "GraphExtractor", "normalize_extraction", "parse_extraction"]
