from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from neo4j import Driver, GraphDatabase

from .config import Settings
from .models import DEFAULT_LABEL, GraphNode, Relationship, RelationshipInput


logger = logging.getLogger(__name__)

REL_KIND = "RELATIONSHIP"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class GraphConfig:
    """
    Simple holder for graph-related configuration.
    """

    uri: str
    username: str
    password: str
    database: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GraphConfig":
        return cls(
            uri=settings.neo4j_uri,
            username=settings.neo4j_username,
            password=settings.neo4j_password,
            database=settings.neo4j_database,
        )


def build_neo4j_driver(config: GraphConfig) -> Driver:
    return GraphDatabase.driver(config.uri, auth=(config.username, config.password))


def sanitize_label(label: str) -> str:
    """Return ``label`` if it is a plain identifier, the default label otherwise."""
    if isinstance(label, str) and _IDENTIFIER.match(label):
        return label
    logger.debug("Unsafe label %r replaced with %s", label, DEFAULT_LABEL)
    return DEFAULT_LABEL


def labels_for(labels: Optional[Iterable[str]]) -> List[str]:
    """Sanitized, de-duplicated labels, always starting with the default label."""
    result = [DEFAULT_LABEL]
    for label in labels or ():
        clean = sanitize_label(label)
        if clean not in result:
            result.append(clean)
    return result


def require_key(key: str) -> str:
    """Property keys are interpolated into Cypher, so they must be identifiers."""
    if not isinstance(key, str) or not _IDENTIFIER.match(key):
        raise ValueError(f"Unsafe property key: {key!r}")
    return key


def extra_labels_clause(alias: str, labels: Sequence[str]) -> str:
    extra = [label for label in labels if label != DEFAULT_LABEL]
    if not extra:
        return ""
    return f"SET {alias}" + "".join(f":{label}" for label in extra)


def properties(value: Any) -> Optional[Dict[str, Any]]:
    """Plain property dict of a driver Node/Relationship (or a mapping)."""
    if value is None:
        return None
    return dict(value)


class Neo4jGateway:
    """
    Opens one session per logical operation and always closes it.

    The driver is synchronous; every query runs in a worker thread so the
    callers can stay async.
    """

    def __init__(self, driver: Driver, database: Optional[str] = None):
        self._driver = driver
        self._database = database

    def _run(self, cypher: str, params: Optional[Mapping[str, Any]] = None) -> List[Any]:
        with self._driver.session(database=self._database) as session:
            return list(session.run(cypher, dict(params or {})))

    async def _query(self, cypher: str, **params: Any) -> List[Any]:
        return await asyncio.to_thread(self._run, cypher, params)


class GraphStore(Neo4jGateway):
    """Entity/relationship upserts, bulk ingestion and neighbourhood expansion."""

    async def upsert_entity(
        self,
        entity_id: str,
        name: str,
        labels: Optional[Iterable[str]] = None,
        props: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Merge the node with ``entity_id``. The name is only written if the node
        has none yet; ``props`` are always applied (last write wins).
        """
        if not entity_id:
            raise ValueError("Entity id must be a non-empty string")
        node_labels = labels_for(labels)
        cypher = (
            f"MERGE (n:{DEFAULT_LABEL} {{id: $id}}) "
            "SET n.name = coalesce(n.name, $name) "
            "SET n += $props "
            f"{extra_labels_clause('n', node_labels)}"
        )
        await self._query(cypher, id=entity_id, name=name, props=props or {})
        logger.debug("Upserted entity %s (%s) labels=%s", entity_id, name, node_labels)

    async def upsert_relationship(
        self,
        source_id: str,
        target_id: str,
        rel_type: str,
        props: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Merge ``(source)-[:RELATIONSHIP {type}]->(target)`` and apply ``props``.

        Returns False when one of the endpoints does not exist.
        """
        records = await self._query(
            f"MATCH (a:{DEFAULT_LABEL} {{id: $source}}), (b:{DEFAULT_LABEL} {{id: $target}}) "
            f"MERGE (a)-[r:{REL_KIND} {{type: $type}}]->(b) "
            "SET r += $props "
            "RETURN count(r) AS merged",
            source=source_id,
            target=target_id,
            type=rel_type,
            props=props or {},
        )
        merged = bool(records and records[0]["merged"])
        if not merged:
            logger.warning(
                "Relationship %s -[%s]-> %s skipped: endpoint not found",
                source_id,
                rel_type,
                target_id,
            )
        return merged

    async def ingest_extraction(
        self, nodes: Dict[str, str], relationships: Sequence[Relationship]
    ) -> Dict[str, str]:
        """Merge extracted ``name -> id`` nodes and their relationships in one session."""
        node_rows = [{"id": node_id, "name": name} for name, node_id in nodes.items()]
        rel_rows = [
            {"source": rel.source, "target": rel.target, "type": rel.type}
            for rel in relationships
        ]

        def _run() -> None:
            with self._driver.session(database=self._database) as session:
                if node_rows:
                    session.run(
                        "UNWIND $rows AS row "
                        f"MERGE (n:{DEFAULT_LABEL} {{id: row.id}}) "
                        "ON CREATE SET n.name = row.name "
                        "ON MATCH SET n.name = coalesce(n.name, row.name)",
                        {"rows": node_rows},
                    ).consume()
                if rel_rows:
                    session.run(
                        "UNWIND $rows AS row "
                        f"MATCH (a:{DEFAULT_LABEL} {{id: row.source}}), (b:{DEFAULT_LABEL} {{id: row.target}}) "
                        f"MERGE (a)-[r:{REL_KIND} {{type: row.type}}]->(b)",
                        {"rows": rel_rows},
                    ).consume()

        await asyncio.to_thread(_run)
        logger.info(
            "Ingested %d node(s) and %d relationship(s) into Neo4j",
            len(node_rows),
            len(rel_rows),
        )
        return nodes

    async def ingest_bulk_transactional(
        self,
        nodes: Sequence[GraphNode],
        relationships: Sequence[RelationshipInput],
    ) -> None:
        """
        Merge all ``nodes`` then all ``relationships`` in a single write
        transaction: the whole batch commits or nothing does.
        """
        # Labels can't be parameters, so rows are grouped per label set.
        groups: Dict[Tuple[str, ...], List[Dict[str, Any]]] = {}
        for node in nodes:
            key = tuple(labels_for(node.labels))
            groups.setdefault(key, []).append(
                {"id": node.id, "name": node.name, "props": node.props or {}}
            )
        rel_rows = [
            {
                "source_id": rel.source_id,
                "target_id": rel.target_id,
                "type": rel.type,
                "props": rel.props or {},
            }
            for rel in relationships
        ]

        def _work(tx) -> None:
            for label_set, rows in groups.items():
                tx.run(
                    "UNWIND $rows AS row "
                    f"MERGE (n:{DEFAULT_LABEL} {{id: row.id}}) "
                    "SET n.name = coalesce(n.name, row.name) "
                    "SET n += row.props "
                    f"{extra_labels_clause('n', label_set)}",
                    rows=rows,
                ).consume()
            if rel_rows:
                tx.run(
                    "UNWIND $rows AS row "
                    f"MATCH (a:{DEFAULT_LABEL} {{id: row.source_id}}), (b:{DEFAULT_LABEL} {{id: row.target_id}}) "
                    f"MERGE (a)-[r:{REL_KIND} {{type: row.type}}]->(b) "
                    "SET r += row.props",
                    rows=rel_rows,
                ).consume()

        def _run() -> None:
            with self._driver.session(database=self._database) as session:
                session.execute_write(_work)

        if not nodes and not relationships:
            return
        await asyncio.to_thread(_run)
        logger.info(
            "Bulk transaction committed: %d node(s), %d relationship(s)",
            len(nodes),
            len(rel_rows),
        )

    async def fetch_related_graph(
        self, entity_ids: Sequence[str], limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """
        Expand seed ids to their direct neighbours plus, where a second hop
        exists, the edge behind each neighbour.

        Returns de-duplicated ``{entity, relationship, related_node}`` dicts.
        Each triple follows the stored edge direction: ``entity`` is the start
        node and ``related_node`` the end node.
        """
        if not entity_ids:
            return []

        records = await self._query(
            f"MATCH (e:{DEFAULT_LABEL})-[r1]-(n1)-[r2]-(n2) "
            "WHERE e.id IN $entity_ids AND n2 <> e "
            "RETURN startNode(r1) AS s1, r1, endNode(r1) AS t1, "
            "startNode(r2) AS s2, r2, endNode(r2) AS t2 "
            "LIMIT $limit "
            "UNION "
            f"MATCH (e:{DEFAULT_LABEL})-[r1]-(n1) "
            "WHERE e.id IN $entity_ids "
            "RETURN startNode(r1) AS s1, r1, endNode(r1) AS t1, "
            "null AS s2, null AS r2, null AS t2 "
            "LIMIT $limit",
            entity_ids=list(entity_ids),
            limit=limit,
        )

        subgraph: List[Dict[str, Any]] = []
        seen = set()

        def _add(start, rel, end) -> None:
            entity, relationship, related = properties(start), properties(rel), properties(end)
            key = (entity.get("id"), relationship.get("type"), related.get("id"))
            if key in seen:
                return
            seen.add(key)
            subgraph.append(
                {"entity": entity, "relationship": relationship, "related_node": related}
            )

        for record in records:
            _add(record["s1"], record["r1"], record["t1"])
            if record["r2"] is not None and record["t2"] is not None:
                _add(record["s2"], record["r2"], record["t2"])

        logger.info(
            "Related graph for %d seed id(s): %d triple(s)", len(entity_ids), len(subgraph)
        )
        return subgraph


__all__ = [
    "GraphConfig",
    "GraphStore",
    "Neo4jGateway",
    "REL_KIND",
    "build_neo4j_driver",
    "extra_labels_clause",
    "labels_for",
    "properties",
    "require_key",
    "sanitize_label",
]
