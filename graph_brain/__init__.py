"""
GraphRAG core: ingest text into a Chroma vector collection and a Neo4j
property graph under shared ids, then answer questions by combining vector
similarity search with graph neighbourhood expansion.

Entry point for most callers is ``graph_brain.engine.BrainEngine``.
"""
