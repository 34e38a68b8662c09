from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

import networkx as nx
from neo4j import GraphDatabase, Session

from .models import Entity, GraphCandidate, Relationship


logger = logging.getLogger(__name__)


def entity_node_id(name: str, entity_type: str) -> str:
    return f"{entity_type}:{name}"


def _matches_query(name: str, query: str) -> bool:
    lowered = name.lower()
    return lowered in query or query in lowered


class GraphStore:
    """
    Storage contract used by ``GraphIndex``.

    All nodes are scoped by workflow id; entities are unique per
    (name, type, workflow).
    """

    name = "base"

    def initialize(self) -> None:
        raise NotImplementedError

    def create_document(
        self,
        workflow_id: str,
        document_id: str,
        filename: str,
        content: str,
        metadata: Dict[str, Any],
    ) -> None:
        raise NotImplementedError

    def document_workflow(self, document_id: str) -> Optional[str]:
        raise NotImplementedError

    def create_chunks(self, workflow_id: str, document_id: str, chunks: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    def upsert_entity(self, workflow_id: str, document_id: str, entity: Entity) -> int:
        """Create or bump the entity and link it to the document. Returns its frequency."""
        raise NotImplementedError

    def create_relationship(self, workflow_id: str, relationship: Relationship) -> bool:
        raise NotImplementedError

    def traverse(self, workflow_id: str, query: str, limit: int) -> List[GraphCandidate]:
        """
        Chunks of documents mentioning entities 1-2 ``RELATED_TO`` hops away
        from the query-matching entities, with the raw relationship score.
        """
        raise NotImplementedError

    def workflow_graph(self, workflow_id: str) -> Dict[str, List[Dict[str, Any]]]:
        raise NotImplementedError

    def entity_context(
        self, workflow_id: str, document_id: str
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        raise NotImplementedError

    def delete_workflow(self, workflow_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class Neo4jGraphStore(GraphStore):
    name = "neo4j"

    def __init__(self, uri: str, username: str, password: str, timeout_seconds: float = 15.0):
        self.uri = uri
        self._auth = (username, password)
        self.timeout_seconds = timeout_seconds
        self._driver = None

    def initialize(self) -> None:
        driver = GraphDatabase.driver(
            self.uri,
            auth=self._auth,
            connection_timeout=self.timeout_seconds,
            connection_acquisition_timeout=self.timeout_seconds,
        )
        try:
            driver.verify_connectivity()
            with driver.session() as session:
                self._create_constraints(session)
        except Exception:
            driver.close()
            raise
        self._driver = driver
        logger.info("Connected to Neo4j at %s", self.uri)

    @staticmethod
    def _create_constraints(session: Session) -> None:
        statements = [
            "CREATE CONSTRAINT document_id IF NOT EXISTS FOR (d:Document) REQUIRE d.id IS UNIQUE",
            "CREATE CONSTRAINT chunk_id IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE",
            "CREATE CONSTRAINT entity_key IF NOT EXISTS FOR (e:Entity) "
            "REQUIRE (e.name, e.type, e.workflowId) IS UNIQUE",
        ]
        for statement in statements:
            session.run(statement)

    def _session(self) -> Session:
        if self._driver is None:
            raise RuntimeError("Neo4j graph store is not initialized")
        return self._driver.session()

    def create_document(self, workflow_id, document_id, filename, content, metadata) -> None:
        with self._session() as session:
            session.run(
                """
                MERGE (d:Document {id: $id})
                SET d.workflowId = $workflowId,
                    d.filename = $filename,
                    d.content = $content,
                    d.metadata = $metadata,
                    d.createdAt = datetime()
                """,
                id=document_id,
                workflowId=workflow_id,
                filename=filename,
                content=content,
                metadata=json.dumps(metadata, ensure_ascii=False, default=str),
            )

    def document_workflow(self, document_id: str) -> Optional[str]:
        with self._session() as session:
            record = session.run(
                "MATCH (d:Document {id: $id}) RETURN d.workflowId AS workflowId",
                id=document_id,
            ).single()
        return record["workflowId"] if record else None

    def create_chunks(self, workflow_id, document_id, chunks) -> None:
        with self._session() as session:
            session.run(
                """
                MATCH (d:Document {id: $documentId})
                UNWIND $chunks AS chunk
                MERGE (c:Chunk {id: chunk.id})
                SET c.content = chunk.content,
                    c.index = chunk.index,
                    c.embedding = chunk.embedding,
                    c.documentId = $documentId,
                    c.workflowId = $workflowId
                MERGE (d)-[:CONTAINS]->(c)
                """,
                documentId=document_id,
                workflowId=workflow_id,
                chunks=chunks,
            )

    def upsert_entity(self, workflow_id, document_id, entity) -> int:
        with self._session() as session:
            record = session.run(
                """
                MERGE (e:Entity {name: $name, type: $type, workflowId: $workflowId})
                ON CREATE SET e.frequency = 1, e.confidence = $confidence
                ON MATCH SET e.frequency = e.frequency + 1
                WITH e
                MATCH (d:Document {id: $documentId})
                MERGE (d)-[:MENTIONS]->(e)
                RETURN e.frequency AS frequency
                """,
                name=entity.name,
                type=entity.type.value,
                workflowId=workflow_id,
                confidence=entity.confidence,
                documentId=document_id,
            ).single()
        return int(record["frequency"]) if record else 0

    def create_relationship(self, workflow_id, relationship) -> bool:
        with self._session() as session:
            record = session.run(
                """
                MATCH (s:Entity {name: $source, workflowId: $workflowId})
                MATCH (t:Entity {name: $target, workflowId: $workflowId})
                MERGE (s)-[r:RELATED_TO {type: $type}]->(t)
                SET r.confidence = $confidence
                RETURN count(r) AS created
                """,
                source=relationship.source,
                target=relationship.target,
                type=relationship.type,
                confidence=relationship.confidence,
                workflowId=workflow_id,
            ).single()
        return bool(record and record["created"])

    def traverse(self, workflow_id, query, limit) -> List[GraphCandidate]:
        q = (query or "").strip().lower()
        if not q:
            return []
        with self._session() as session:
            records = list(
                session.run(
                    """
                    MATCH (e:Entity {workflowId: $workflowId})
                    WHERE $query CONTAINS toLower(e.name) OR toLower(e.name) CONTAINS $query
                    MATCH (e)-[:RELATED_TO*1..2]-(related:Entity {workflowId: $workflowId})
                    WHERE related <> e
                    MATCH (d:Document {workflowId: $workflowId})-[:MENTIONS]->(related)
                    MATCH (d)-[:CONTAINS]->(c:Chunk)
                    RETURN c.id AS chunkId, c.content AS content, d.id AS documentId,
                           collect(DISTINCT e.name) AS entities,
                           collect(DISTINCT related.name) AS relatedEntities,
                           count(DISTINCT related) AS relationshipScore
                    ORDER BY relationshipScore DESC, documentId, c.index
                    LIMIT $limit
                    """,
                    workflowId=workflow_id,
                    query=q,
                    limit=int(limit),
                )
            )
        return [
            GraphCandidate(
                chunk_id=r["chunkId"],
                content=r["content"] or "",
                document_id=r["documentId"],
                entities=list(r["entities"]),
                related_entities=list(r["relatedEntities"]),
                relationship_score=int(r["relationshipScore"]),
            )
            for r in records
        ]

    def workflow_graph(self, workflow_id):
        with self._session() as session:
            nodes = [
                {
                    "id": entity_node_id(r["name"], r["type"]),
                    "label": r["name"],
                    "type": r["type"],
                    "frequency": int(r["frequency"] or 1),
                }
                for r in session.run(
                    """
                    MATCH (e:Entity {workflowId: $workflowId})
                    RETURN e.name AS name, e.type AS type, e.frequency AS frequency
                    ORDER BY e.name
                    """,
                    workflowId=workflow_id,
                )
            ]
            edges = [
                {
                    "source": entity_node_id(r["sourceName"], r["sourceType"]),
                    "target": entity_node_id(r["targetName"], r["targetType"]),
                    "type": r["type"],
                    "confidence": r["confidence"],
                }
                for r in session.run(
                    """
                    MATCH (s:Entity {workflowId: $workflowId})-[r:RELATED_TO]->(t:Entity)
                    RETURN s.name AS sourceName, s.type AS sourceType,
                           t.name AS targetName, t.type AS targetType,
                           r.type AS type, r.confidence AS confidence
                    """,
                    workflowId=workflow_id,
                )
            ]
        return {"nodes": nodes, "edges": edges}

    def entity_context(self, workflow_id, document_id):
        with self._session() as session:
            entities = [
                {"name": r["name"], "type": r["type"], "frequency": r["frequency"]}
                for r in session.run(
                    """
                    MATCH (d:Document {id: $documentId, workflowId: $workflowId})-[:MENTIONS]->(e:Entity)
                    RETURN e.name AS name, e.type AS type, e.frequency AS frequency
                    """,
                    documentId=document_id,
                    workflowId=workflow_id,
                )
            ]
            relationships = [
                {"source": r["source"], "target": r["target"], "type": r["type"]}
                for r in session.run(
                    """
                    MATCH (d:Document {id: $documentId, workflowId: $workflowId})-[:MENTIONS]->(s:Entity)
                    MATCH (s)-[r:RELATED_TO]->(t:Entity)<-[:MENTIONS]-(d)
                    RETURN s.name AS source, t.name AS target, r.type AS type
                    """,
                    documentId=document_id,
                    workflowId=workflow_id,
                )
            ]
        return entities, relationships

    def delete_workflow(self, workflow_id: str) -> None:
        with self._session() as session:
            session.run(
                "MATCH (n {workflowId: $workflowId}) DETACH DELETE n",
                workflowId=workflow_id,
            )

    def close(self) -> None:
        if self._driver is not None:
            self._driver.close()
            self._driver = None


class NetworkXGraphStore(GraphStore):
    """
    In-process graph store: one ``networkx.MultiDiGraph`` per workflow.

    Node keys are ``("document", id)``, ``("chunk", id)`` and
    ``("entity", name, type)``; edge keys are ``CONTAINS``, ``MENTIONS`` and
    ``RELATED_TO:<type>``.
    """

    name = "networkx"

    def __init__(self):
        self._graphs: Dict[str, nx.MultiDiGraph] = {}
        self._documents: Dict[str, str] = {}
        self._guard = threading.RLock()

    def initialize(self) -> None:
        logger.info("Using in-process networkx graph store")

    def _graph(self, workflow_id: str) -> nx.MultiDiGraph:
        graph = self._graphs.get(workflow_id)
        if graph is None:
            graph = nx.MultiDiGraph(workflow_id=workflow_id)
            self._graphs[workflow_id] = graph
        return graph

    def create_document(self, workflow_id, document_id, filename, content, metadata) -> None:
        with self._guard:
            self._graph(workflow_id).add_node(
                ("document", document_id),
                kind="document",
                id=document_id,
                filename=filename,
                content=content,
                metadata=dict(metadata),
            )
            self._documents[document_id] = workflow_id

    def document_workflow(self, document_id: str) -> Optional[str]:
        with self._guard:
            return self._documents.get(document_id)

    def create_chunks(self, workflow_id, document_id, chunks) -> None:
        with self._guard:
            graph = self._graph(workflow_id)
            doc_node = ("document", document_id)
            for chunk in chunks:
                chunk_node = ("chunk", chunk["id"])
                graph.add_node(
                    chunk_node,
                    kind="chunk",
                    id=chunk["id"],
                    content=chunk["content"],
                    index=chunk["index"],
                    document_id=document_id,
                )
                graph.add_edge(doc_node, chunk_node, key="CONTAINS", relation="CONTAINS")

    def upsert_entity(self, workflow_id, document_id, entity) -> int:
        with self._guard:
            graph = self._graph(workflow_id)
            node = ("entity", entity.name, entity.type.value)
            if graph.has_node(node):
                graph.nodes[node]["frequency"] += 1
            else:
                graph.add_node(
                    node,
                    kind="entity",
                    name=entity.name,
                    type=entity.type.value,
                    confidence=entity.confidence,
                    frequency=1,
                )
            doc_node = ("document", document_id)
            if graph.has_node(doc_node) and not graph.has_edge(doc_node, node, key="MENTIONS"):
                graph.add_edge(doc_node, node, key="MENTIONS", relation="MENTIONS")
            return graph.nodes[node]["frequency"]

    def _entity_nodes(self, graph: nx.MultiDiGraph, name: str) -> List[Tuple]:
        return [
            n
            for n, data in graph.nodes(data=True)
            if data.get("kind") == "entity" and data["name"] == name
        ]

    def create_relationship(self, workflow_id, relationship) -> bool:
        with self._guard:
            graph = self._graph(workflow_id)
            sources = self._entity_nodes(graph, relationship.source)
            targets = self._entity_nodes(graph, relationship.target)
            created = False
            for s in sources:
                for t in targets:
                    graph.add_edge(
                        s,
                        t,
                        key=f"RELATED_TO:{relationship.type}",
                        relation="RELATED_TO",
                        type=relationship.type,
                        confidence=relationship.confidence,
                    )
                    created = True
            return created

    def traverse(self, workflow_id, query, limit) -> List[GraphCandidate]:
        q = (query or "").strip().lower()
        if not q:
            return []
        with self._guard:
            graph = self._graphs.get(workflow_id)
            if graph is None:
                return []

            seeds = [
                n
                for n, data in graph.nodes(data=True)
                if data.get("kind") == "entity" and _matches_query(data["name"], q)
            ]
            related_view = nx.Graph()
            related_view.add_edges_from(
                (u, v)
                for u, v, data in graph.edges(data=True)
                if data.get("relation") == "RELATED_TO"
            )

            # reached entity -> names of the seeds it was reached from
            reached: Dict[Tuple, Set[str]] = {}
            for seed in seeds:
                if seed not in related_view:
                    continue
                lengths = nx.single_source_shortest_path_length(related_view, seed, cutoff=2)
                for node, distance in lengths.items():
                    if distance >= 1:
                        reached.setdefault(node, set()).add(graph.nodes[seed]["name"])

            candidates: List[GraphCandidate] = []
            for node, data in graph.nodes(data=True):
                if data.get("kind") != "document":
                    continue
                mentioned = {
                    target
                    for _, target, key in graph.out_edges(node, keys=True)
                    if key == "MENTIONS"
                }
                hits = mentioned & reached.keys()
                if not hits:
                    continue
                seed_names = sorted(set().union(*(reached[h] for h in hits)))
                related_names = sorted({graph.nodes[h]["name"] for h in hits})
                chunk_nodes = sorted(
                    (
                        target
                        for _, target, key in graph.out_edges(node, keys=True)
                        if key == "CONTAINS"
                    ),
                    key=lambda c: graph.nodes[c]["index"],
                )
                for chunk_node in chunk_nodes:
                    chunk = graph.nodes[chunk_node]
                    candidates.append(
                        GraphCandidate(
                            chunk_id=chunk["id"],
                            content=chunk["content"],
                            document_id=data["id"],
                            entities=seed_names,
                            related_entities=related_names,
                            relationship_score=len(hits),
                        )
                    )

        # stable: chunks stay in index order within a document
        candidates.sort(key=lambda c: (-c.relationship_score, c.document_id))
        return candidates[:limit]

    def workflow_graph(self, workflow_id):
        with self._guard:
            graph = self._graphs.get(workflow_id)
            if graph is None:
                return {"nodes": [], "edges": []}
            nodes = [
                {
                    "id": entity_node_id(data["name"], data["type"]),
                    "label": data["name"],
                    "type": data["type"],
                    "frequency": data["frequency"],
                }
                for _, data in graph.nodes(data=True)
                if data.get("kind") == "entity"
            ]
            edges = [
                {
                    "source": entity_node_id(u[1], u[2]),
                    "target": entity_node_id(v[1], v[2]),
                    "type": data["type"],
                    "confidence": data.get("confidence"),
                }
                for u, v, data in graph.edges(data=True)
                if data.get("relation") == "RELATED_TO"
            ]
        nodes.sort(key=lambda n: n["label"])
        return {"nodes": nodes, "edges": edges}

    def entity_context(self, workflow_id, document_id):
        with self._guard:
            graph = self._graphs.get(workflow_id)
            doc_node = ("document", document_id)
            if graph is None or not graph.has_node(doc_node):
                return [], []
            mentioned = [
                target
                for _, target, key in graph.out_edges(doc_node, keys=True)
                if key == "MENTIONS"
            ]
            entities = [
                {
                    "name": graph.nodes[n]["name"],
                    "type": graph.nodes[n]["type"],
                    "frequency": graph.nodes[n]["frequency"],
                }
                for n in mentioned
            ]
            mentioned_set = set(mentioned)
            relationships = [
                {"source": u[1], "target": v[1], "type": data["type"]}
                for u, v, data in graph.edges(data=True)
                if data.get("relation") == "RELATED_TO"
                and u in mentioned_set
                and v in mentioned_set
            ]
        return entities, relationships

    def delete_workflow(self, workflow_id: str) -> None:
        with self._guard:
            self._graphs.pop(workflow_id, None)
            for document_id in [d for d, wf in self._documents.items() if wf == workflow_id]:
                del self._documents[document_id]


__all__ = ["GraphStore", "Neo4jGraphStore", "NetworkXGraphStore", "entity_node_id"]
