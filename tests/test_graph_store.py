import asyncio

import pytest

from graph_brain.graph_store import GraphStore, labels_for, sanitize_label
from graph_brain.models import GraphNode, Relationship, RelationshipInput


def test_sanitize_label_falls_back_to_entity():
    assert sanitize_label("Component") == "Component"
    assert sanitize_label("Bad Label") == "Entity"
    assert sanitize_label("X) DETACH DELETE (n") == "Entity"
    assert labels_for(["Component", "Entity", "oops-label", "Component"]) == ["Entity", "Component"]


def test_upsert_entity_merges_on_entity_id_and_keeps_first_name(neo4j_driver):
    store = GraphStore(neo4j_driver)

    asyncio.run(store.upsert_entity("c1", "Button", ["Entity", "Component"], {"category": "ui"}))

    cypher, params = neo4j_driver.calls[0]
    assert cypher.startswith("MERGE (n:Entity {id: $id})")
    assert "SET n.name = coalesce(n.name, $name)" in cypher
    assert "SET n += $props" in cypher
    assert cypher.endswith("SET n:Component")
    assert params == {"id": "c1", "name": "Button", "props": {"category": "ui"}}


def test_upsert_entity_with_unsafe_label_uses_default(neo4j_driver):
    store = GraphStore(neo4j_driver)
    asyncio.run(store.upsert_entity("c1", "Button", ["Comp`onent"]))

    cypher, _ = neo4j_driver.calls[0]
    assert "Comp`onent" not in cypher
    assert "SET n:" not in cypher


def test_upsert_entity_rejects_empty_id(neo4j_driver):
    with pytest.raises(ValueError):
        asyncio.run(GraphStore(neo4j_driver).upsert_entity("", "nameless"))
    assert neo4j_driver.calls == []


def test_upsert_relationship_uses_type_discriminator(neo4j_driver):
    neo4j_driver.responses.append([{"merged": 1}])
    store = GraphStore(neo4j_driver)

    merged = asyncio.run(store.upsert_relationship("a", "b", "USES", {"weight": 2}))

    cypher, params = neo4j_driver.calls[0]
    assert merged is True
    assert "MERGE (a)-[r:RELATIONSHIP {type: $type}]->(b)" in cypher
    assert "SET r += $props" in cypher
    assert params == {"source": "a", "target": "b", "type": "USES", "props": {"weight": 2}}


def test_upsert_relationship_reports_missing_endpoint(neo4j_driver):
    neo4j_driver.responses.append([{"merged": 0}])
    assert asyncio.run(GraphStore(neo4j_driver).upsert_relationship("a", "zz", "USES")) is False


def test_session_released_when_query_fails(neo4j_driver):
    neo4j_driver.fail_on = "MERGE"
    store = GraphStore(neo4j_driver)

    with pytest.raises(RuntimeError, match="neo4j unavailable"):
        asyncio.run(store.upsert_entity("c1", "Button"))
    assert neo4j_driver.sessions_opened == neo4j_driver.sessions_closed == 1


def test_database_is_passed_to_sessions(neo4j_driver):
    asyncio.run(GraphStore(neo4j_driver, database="brain").upsert_entity("c1", "Button"))
    assert neo4j_driver.databases == ["brain"]


def test_ingest_extraction_merges_nodes_then_relationships(neo4j_driver):
    store = GraphStore(neo4j_driver)
    nodes = {"Alice": "id-a", "Bob": "id-b"}

    result = asyncio.run(store.ingest_extraction(nodes, [Relationship("id-a", "id-b", "KNOWS")]))

    assert result == nodes
    (node_query, node_params), (rel_query, rel_params) = neo4j_driver.calls
    assert "ON MATCH SET n.name = coalesce(n.name, row.name)" in node_query
    assert node_params["rows"] == [{"id": "id-a", "name": "Alice"}, {"id": "id-b", "name": "Bob"}]
    assert "MERGE (a)-[r:RELATIONSHIP {type: row.type}]->(b)" in rel_query
    assert rel_params["rows"] == [{"source": "id-a", "target": "id-b", "type": "KNOWS"}]
    assert neo4j_driver.sessions_opened == 1


def test_bulk_ingest_runs_in_one_transaction_grouped_by_labels(neo4j_driver):
    store = GraphStore(neo4j_driver)
    nodes = [
        GraphNode(id="1", name="One"),
        GraphNode(id="2", name="Two", labels=["Entity", "Component"], props={"tags": ["x"]}),
        GraphNode(id="3", name="Three", labels=["Component"]),
    ]
    rels = [RelationshipInput(source_id="1", target_id="2", type="CONTAINS")]

    asyncio.run(store.ingest_bulk_transactional(nodes, rels))

    assert len(neo4j_driver.committed) == 1
    tx_calls = neo4j_driver.committed[0]
    assert len(tx_calls) == 3
    plain_query, plain_params = tx_calls[0]
    component_query, component_params = tx_calls[1]
    assert "SET n:" not in plain_query
    assert [row["id"] for row in plain_params["rows"]] == ["1"]
    assert component_query.endswith("SET n:Component")
    assert [row["id"] for row in component_params["rows"]] == ["2", "3"]
    assert tx_calls[2][1]["rows"] == [
        {"source_id": "1", "target_id": "2", "type": "CONTAINS", "props": {}}
    ]


def test_bulk_ingest_failure_commits_nothing(neo4j_driver):
    neo4j_driver.fail_on = "MATCH (a:Entity"
    store = GraphStore(neo4j_driver)

    with pytest.raises(RuntimeError):
        asyncio.run(
            store.ingest_bulk_transactional(
                [GraphNode(id="1", name="One")],
                [RelationshipInput(source_id="1", target_id="2", type="CONTAINS")],
            )
        )
    assert neo4j_driver.committed == []
    assert neo4j_driver.sessions_closed == 1


def test_fetch_related_graph_flattens_and_deduplicates(neo4j_driver):
    a = {"id": "a", "name": "A"}
    b = {"id": "b", "name": "B"}
    c = {"id": "c", "name": "C"}
    likes = {"type": "LIKES"}
    knows = {"type": "KNOWS"}
    neo4j_driver.responses.append(
        [
            {"s1": a, "r1": likes, "t1": b, "s2": b, "r2": knows, "t2": c},
            {"s1": a, "r1": likes, "t1": b, "s2": None, "r2": None, "t2": None},
        ]
    )
    store = GraphStore(neo4j_driver)

    subgraph = asyncio.run(store.fetch_related_graph(["a"]))

    assert subgraph == [
        {"entity": a, "relationship": likes, "related_node": b},
        {"entity": b, "relationship": knows, "related_node": c},
    ]
    cypher, params = neo4j_driver.calls[0]
    assert "UNION" in cypher
    assert params == {"entity_ids": ["a"], "limit": 1000}


def test_fetch_related_graph_short_circuits_on_no_ids(neo4j_driver):
    assert asyncio.run(GraphStore(neo4j_driver).fetch_related_graph([])) == []
    assert neo4j_driver.calls == []
