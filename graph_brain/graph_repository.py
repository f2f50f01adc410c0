"""
Read and delete access to the property graph.

``GraphRepository`` covers lookups by id, name and exact property values.
``AdvancedGraphRepository`` adds per-field predicates, ordering and
fixed-radius neighbourhoods. Values always travel as bound parameters; the
only interpolated pieces (labels, property keys, sort direction, depth
bounds) are checked against a strict whitelist first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .graph_store import (
    REL_KIND,
    Neo4jGateway,
    properties,
    require_key,
    sanitize_label,
)
from .models import DEFAULT_LABEL


PREDICATE_OPS = ("eq", "contains", "in")
MAX_TRAVERSAL_DEPTH = 5


@dataclass
class PropertyPredicate:
    op: str  # "eq" | "contains" | "in"
    value: Any

    def __post_init__(self):
        if self.op not in PREDICATE_OPS:
            raise ValueError(f"Unknown predicate op {self.op!r}; expected one of {PREDICATE_OPS}")


PredicateLike = Union[PropertyPredicate, Mapping[str, Any]]


@dataclass
class OrderBy:
    key: str
    direction: str = "ASC"

    def __post_init__(self):
        self.direction = self.direction.upper()
        if self.direction not in ("ASC", "DESC"):
            raise ValueError(f"Order direction must be ASC or DESC, got {self.direction!r}")


@dataclass
class NodeQueryFilter:
    labels: Optional[List[str]] = None
    where: Dict[str, PredicateLike] = field(default_factory=dict)
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_by: Optional[OrderBy] = None


# Relationship results can only be sorted by these columns.
RELATIONSHIP_ORDER_KEYS = {
    "source.name": "a.name",
    "target.name": "b.name",
    "type": "r.type",
}


@dataclass
class RelationshipQueryFilter:
    type: Optional[str] = None
    source_label: Optional[str] = None
    target_label: Optional[str] = None
    source_where: Dict[str, PredicateLike] = field(default_factory=dict)
    rel_where: Dict[str, PredicateLike] = field(default_factory=dict)
    target_where: Dict[str, PredicateLike] = field(default_factory=dict)
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_by: Optional[OrderBy] = None


def _as_predicate(value: PredicateLike) -> PropertyPredicate:
    if isinstance(value, PropertyPredicate):
        return value
    return PropertyPredicate(op=value["op"], value=value.get("value"))


def build_where(
    alias: str, where: Optional[Mapping[str, PredicateLike]]
) -> Tuple[List[str], Dict[str, Any]]:
    """
    Translate ``{key: predicate}`` into Cypher conditions on ``alias`` and
    their parameters. Parameter names are prefixed with the alias so filters
    on several aliases can share one query.
    """
    conditions: List[str] = []
    params: Dict[str, Any] = {}
    for key, raw in (where or {}).items():
        key = require_key(key)
        predicate = _as_predicate(raw)
        param = f"{alias}_{key}"
        if predicate.op == "eq":
            conditions.append(f"{alias}.{key} = ${param}")
            params[param] = predicate.value
        elif predicate.op == "contains":
            conditions.append(f"toLower(toString({alias}.{key})) CONTAINS toLower(${param})")
            params[param] = "" if predicate.value is None else str(predicate.value)
        else:
            conditions.append(f"{alias}.{key} IN ${param}")
            value = predicate.value
            params[param] = list(value) if isinstance(value, (list, tuple, set)) else [value]
    return conditions, params


def _where_clause(conditions: Sequence[str]) -> str:
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


def _page_clause(offset: Optional[int], limit: Optional[int], params: Dict[str, Any]) -> str:
    parts = []
    if offset is not None:
        params["skip"] = max(0, int(offset))
        parts.append("SKIP $skip")
    if limit is not None:
        params["limit"] = max(0, int(limit))
        parts.append("LIMIT $limit")
    return " ".join(parts)


def _edge(record) -> Dict[str, Any]:
    return {
        "source": properties(record["a"]),
        "relationship": properties(record["r"]),
        "target": properties(record["b"]),
    }


class GraphRepository(Neo4jGateway):
    async def get_node_by_id(self, node_id: str, label: str = DEFAULT_LABEL) -> Optional[Dict[str, Any]]:
        """Node properties, or None when nothing matches."""
        records = await self._query(
            f"MATCH (n:{sanitize_label(label)} {{id: $id}}) RETURN n LIMIT 1", id=node_id
        )
        return properties(records[0]["n"]) if records else None

    async def list_nodes(
        self,
        label: str = DEFAULT_LABEL,
        props: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Nodes with ``label`` whose properties equal every entry of ``props``."""
        where = {key: PropertyPredicate("eq", value) for key, value in (props or {}).items()}
        conditions, params = build_where("n", where)
        page = _page_clause(offset, limit, params)
        records = await self._query(
            f"MATCH (n:{sanitize_label(label)}) {_where_clause(conditions)} RETURN n {page}",
            **params,
        )
        return [properties(record["n"]) for record in records]

    async def delete_node(self, node_id: str, detach: bool = True, label: str = DEFAULT_LABEL) -> None:
        """
        Delete a node. With ``detach`` its relationships go too; without it,
        the store refuses to delete a node that still has relationships.
        """
        verb = "DETACH DELETE" if detach else "DELETE"
        await self._query(
            f"MATCH (n:{sanitize_label(label)} {{id: $id}}) {verb} n", id=node_id
        )

    async def delete_relationship(self, source_id: str, target_id: str, rel_type: str) -> None:
        await self._query(
            f"MATCH (a:{DEFAULT_LABEL} {{id: $source}})-[r:{REL_KIND} {{type: $type}}]->"
            f"(b:{DEFAULT_LABEL} {{id: $target}}) DELETE r",
            source=source_id,
            target=target_id,
            type=rel_type,
        )

    async def find_by_name(
        self, name: str, label: str = DEFAULT_LABEL, limit: int = 25
    ) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on ``name``."""
        records = await self._query(
            f"MATCH (n:{sanitize_label(label)}) "
            "WHERE toLower(n.name) CONTAINS toLower($name) "
            "RETURN n LIMIT $limit",
            name=name,
            limit=limit,
        )
        return [properties(record["n"]) for record in records]

    async def ensure_unique_id_constraint(self, label: str = DEFAULT_LABEL) -> None:
        label = sanitize_label(label)
        await self._query(
            f"CREATE CONSTRAINT {label.lower()}_id_unique IF NOT EXISTS "
            f"FOR (n:{label}) REQUIRE n.id IS UNIQUE"
        )


class AdvancedGraphRepository(GraphRepository):
    async def list_nodes_advanced(self, query: Optional[NodeQueryFilter] = None) -> List[Dict[str, Any]]:
        query = query or NodeQueryFilter()
        clean = dict.fromkeys(sanitize_label(label) for label in (query.labels or [DEFAULT_LABEL]))
        labels = "".join(f":{label}" for label in clean)
        conditions, params = build_where("n", query.where)
        order = ""
        if query.order_by:
            order = f"ORDER BY n.{require_key(query.order_by.key)} {query.order_by.direction}"
        page = _page_clause(query.offset, query.limit, params)
        records = await self._query(
            f"MATCH (n{labels}) {_where_clause(conditions)} RETURN n {order} {page}",
            **params,
        )
        return [properties(record["n"]) for record in records]

    async def list_relationships(
        self, query: Optional[RelationshipQueryFilter] = None
    ) -> List[Dict[str, Any]]:
        """``{source, relationship, target}`` dicts matching the filter."""
        query = query or RelationshipQueryFilter()
        source_label = sanitize_label(query.source_label or DEFAULT_LABEL)
        target_label = sanitize_label(query.target_label or DEFAULT_LABEL)

        conditions: List[str] = []
        params: Dict[str, Any] = {}
        for alias, where in (("a", query.source_where), ("r", query.rel_where), ("b", query.target_where)):
            alias_conditions, alias_params = build_where(alias, where)
            conditions.extend(alias_conditions)
            params.update(alias_params)

        rel_pattern = f"r:{REL_KIND}"
        if query.type:
            rel_pattern += " {type: $rel_type}"
            params["rel_type"] = query.type

        order = ""
        if query.order_by:
            column = RELATIONSHIP_ORDER_KEYS.get(query.order_by.key)
            if column is None:
                raise ValueError(
                    f"Cannot order relationships by {query.order_by.key!r}; "
                    f"expected one of {sorted(RELATIONSHIP_ORDER_KEYS)}"
                )
            order = f"ORDER BY {column} {query.order_by.direction}"
        page = _page_clause(query.offset, query.limit, params)

        records = await self._query(
            f"MATCH (a:{source_label})-[{rel_pattern}]->(b:{target_label}) "
            f"{_where_clause(conditions)} RETURN a, r, b {order} {page}",
            **params,
        )
        return [_edge(record) for record in records]

    async def list_neighbors_by_depth(
        self, node_id: str, min_depth: int = 1, max_depth: int = 1, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Relationships on paths of ``min_depth..max_depth`` hops from the node,
        as ``{source, relationship, target}`` in stored direction.
        """
        min_depth, max_depth = int(min_depth), int(max_depth)
        if not 1 <= min_depth <= max_depth <= MAX_TRAVERSAL_DEPTH:
            raise ValueError(
                f"Depth range must satisfy 1 <= min <= max <= {MAX_TRAVERSAL_DEPTH}, "
                f"got {min_depth}..{max_depth}"
            )
        records = await self._query(
            f"MATCH p = (n:{DEFAULT_LABEL} {{id: $id}})-[:{REL_KIND}*{min_depth}..{max_depth}]-(m) "
            "UNWIND relationships(p) AS r "
            "WITH DISTINCT r LIMIT $limit "
            "RETURN startNode(r) AS a, r, endNode(r) AS b",
            id=node_id,
            limit=limit,
        )
        return [_edge(record) for record in records]


__all__ = [
    "AdvancedGraphRepository",
    "GraphRepository",
    "MAX_TRAVERSAL_DEPTH",
    "NodeQueryFilter",
    "OrderBy",
    "PropertyPredicate",
    "RelationshipQueryFilter",
    "build_where",
]
