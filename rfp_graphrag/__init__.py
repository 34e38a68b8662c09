"""
Core package for RFP analysis with workflow-scoped RAG + GraphRAG retrieval.

Documents submitted under a workflow are chunked and embedded into a tiered
vector store, indexed into an entity graph (Neo4j or an in-process networkx
graph) and later queried through a hybrid coordinator that fuses both sides.
A durable per-workflow state machine drives ingestion through answer
synthesis.
"""
