"""
Data shapes shared by the ingestion and retrieval pipelines.

Pydantic models validate anything that crosses the library boundary
(LLM output, ingest requests). Everything is strict: unknown keys are
rejected and required strings must be non-empty where an id or a text to
embed is expected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr


DEFAULT_LABEL = "Entity"
COMPONENT_LABELS = [DEFAULT_LABEL, "Component"]


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ------- LLM extraction contract -------


class GraphTriple(BaseModel):
    """One ``node -[relationship]-> target_node`` statement from the model."""

    node: StrictStr
    target_node: StrictStr
    relationship: StrictStr


class GraphExtraction(BaseModel):
    graph: List[GraphTriple]


# ------- Ingest DTOs -------


class VectorItem(_StrictModel):
    id: str = Field(min_length=1)
    description: str = Field(min_length=1)  # text to embed
    payload: Optional[Dict[str, Any]] = None


class ComponentInput(_StrictModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    props: Optional[Dict[str, Any]] = None


class RelationshipInput(_StrictModel):
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    props: Optional[Dict[str, Any]] = None


class IngestRequest(_StrictModel):
    collection: str = Field(min_length=1)
    vector_items: Optional[List[VectorItem]] = None
    graph_entities: Optional[List[ComponentInput]] = None
    relationships: Optional[List[RelationshipInput]] = None


class Fragment(_StrictModel):
    description: str = Field(min_length=1)
    tags: Optional[List[str]] = None
    category: Optional[str] = None


class ComponentMeta(_StrictModel):
    name: str = Field(min_length=1)
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    props: Optional[Dict[str, Any]] = None


class FragmentItem(_StrictModel):
    id: str = Field(min_length=1)
    fragment: Fragment
    component: Optional[ComponentMeta] = None


# ------- Internal value objects -------


@dataclass
class Relationship:
    source: str
    target: str
    type: str


@dataclass
class ExtractedGraph:
    nodes: Dict[str, str] = field(default_factory=dict)  # name -> id
    relationships: List[Relationship] = field(default_factory=list)


@dataclass
class PointItem:
    """A vector point ready to be written: ``{id, vector, payload}``."""

    id: str
    vector: List[float]
    payload: Optional[Dict[str, Any]] = None


@dataclass
class GraphNode:
    id: str
    name: str
    labels: List[str] = field(default_factory=lambda: [DEFAULT_LABEL])
    props: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphContext:
    nodes: List[str] = field(default_factory=list)
    edges: List[str] = field(default_factory=list)


@dataclass
class RetrievalResult:
    ids: List[str]
    subgraph: List[Dict[str, Any]]


__all__ = [
    "COMPONENT_LABELS",
    "DEFAULT_LABEL",
    "ComponentInput",
    "ComponentMeta",
    "ExtractedGraph",
    "Fragment",
    "FragmentItem",
    "GraphContext",
    "GraphExtraction",
    "GraphNode",
    "GraphTriple",
    "IngestRequest",
    "PointItem",
    "Relationship",
    "RelationshipInput",
    "RetrievalResult",
    "VectorItem",
]
