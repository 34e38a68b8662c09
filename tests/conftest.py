"""Shared fixtures: deterministic embedding model, scripted LLM, temp settings."""

import copy
import hashlib
import json
import re
from pathlib import Path

import numpy as np
import pytest

from rfp_graphrag.agents import (
    ClarificationQuestionsAgent,
    DocumentIngestionAgent,
    RequirementsAnalysisAgent,
    ResponseCompilationAgent,
)
from rfp_graphrag.cache import Cache, NullCache
from rfp_graphrag.config import Settings
from rfp_graphrag.context import build_service_context
from rfp_graphrag.embedder import Embedder
from rfp_graphrag.exceptions import CollaboratorError
from rfp_graphrag.graph_store import NetworkXGraphStore
from rfp_graphrag.rag_pipeline import SYSTEM_PROMPT
from rfp_graphrag.workflow_engine import WorkflowEngine


DIMENSION = 384
_TOKEN = re.compile(r"\w+")


class HashingModel:
    """
    Stand-in for SentenceTransformer: bag of words hashed into signed buckets.
    Texts sharing words get positive cosine similarity.
    """

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def encode(self, texts, convert_to_numpy=True, normalize_embeddings=True):
        self.calls += 1
        matrix = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in _TOKEN.findall(text.lower()):
                digest = hashlib.md5(token.encode("utf-8")).digest()
                bucket = int.from_bytes(digest[:4], "little") % self.dimension
                matrix[row, bucket] += 1.0 if digest[4] % 2 == 0 else -1.0
        if normalize_embeddings:
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            matrix = matrix / norms
        return matrix


class ScriptedLLM:
    """
    LLM double keyed by system prompt. A reply may be a string, an exception
    to raise, or a callable receiving the user prompt. Unknown prompts raise
    CollaboratorError, like an unreachable endpoint.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def _reply(self, system_prompt, prompt):
        self.calls.append({"system_prompt": system_prompt, "prompt": prompt})
        if system_prompt not in self.responses:
            raise CollaboratorError("connection refused")
        reply = self.responses[system_prompt]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def complete(self, prompt, system_prompt=None, max_tokens=None, temperature=0.2):
        return self._reply(system_prompt, prompt)

    def chat(self, messages, max_tokens=None, temperature=0.2):
        messages = list(messages)
        system_prompt = next((m["content"] for m in messages if m["role"] == "system"), None)
        self.last_messages = messages
        return self._reply(system_prompt, messages[-1]["content"])

    def count(self, system_prompt):
        return sum(1 for c in self.calls if c["system_prompt"] == system_prompt)


class DictCache(Cache):
    """In-process cache with the same JSON round-trip semantics as RedisCache."""

    name = "dict"

    def __init__(self):
        self.store = {}

    def get(self, key):
        return copy.deepcopy(self.store.get(key))

    def set(self, key, value, ttl=None):
        self.store[key] = json.loads(json.dumps(value, default=str))

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    def increment(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def get_int(self, key):
        return int(self.store.get(key, 0))


INGESTION_REPLY = json.dumps(
    {
        "document_type": "rfp",
        "title": "Citizen Services Portal",
        "overview": "Modernise the citizen services portal",
        "key_requirements": ["24/7 support", "Kubernetes hosting"],
        "deadlines": ["Proposals due 1 March"],
        "confidence": 0.9,
    }
)

REQUIREMENTS_REPLY = json.dumps(
    {
        "project_overview": {"title": "Citizen Services Portal", "objectives": ["modernise"]},
        "requirements": {
            "technical": [
                {"id": "tech_001", "description": "Host the portal on Kubernetes", "priority": "high"}
            ],
            "compliance": [
                {"id": "comp_001", "description": "Hold ISO 27001 certification", "mandatory": True}
            ],
        },
        "confidence": 0.85,
    }
)

QUESTIONS_REPLY = json.dumps(
    {
        "question_categories": {
            "technical": [
                {
                    "id": "tech_q_001",
                    "question": "Which Kubernetes version must the portal run on?",
                    "priority": "high",
                    "related_requirements": ["tech_001"],
                }
            ],
            "timeline": [
                {"id": "time_q_001", "question": "When does the support period start?"}
            ],
        },
        "confidence": 0.88,
    }
)

ANSWER_REPLY = "The vendor must provide 24/7 support for the portal."

RESPONSE_REPLY = json.dumps(
    {
        "executive_summary": {"project_title": "Citizen Services Portal", "confidence_level": "medium"},
        "proposal_structure": {"sections": []},
        "confidence": 0.95,
    }
)

RFP_TEXT = (
    "Request for Proposal: Citizen Services Portal. The Ministry of Health invites "
    "vendors to host the portal on Kubernetes with PostgreSQL storage. The vendor "
    "must provide 24/7 support and hold ISO 27001 certification. Proposals are due "
    "on 1 March and the support period starts at go-live."
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        vector_store_root=tmp_path / "vectors",
        workflow_db_root=tmp_path / "workflows",
        upload_root=tmp_path / "uploads",
        vector_backends=("workflow", "memory"),
        agent_retry_attempts=2,
        agent_retry_delay_seconds=0,
        search_timeout_seconds=5,
    )


@pytest.fixture
def hashing_model() -> HashingModel:
    return HashingModel()


@pytest.fixture
def embedder(hashing_model) -> Embedder:
    return Embedder("test-hashing-model", dimension=DIMENSION, model=hashing_model)


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM(
        {
            DocumentIngestionAgent.system_prompt: INGESTION_REPLY,
            RequirementsAnalysisAgent.system_prompt: REQUIREMENTS_REPLY,
            ClarificationQuestionsAgent.system_prompt: QUESTIONS_REPLY,
            SYSTEM_PROMPT: ANSWER_REPLY,
            ResponseCompilationAgent.system_prompt: RESPONSE_REPLY,
        }
    )


@pytest.fixture
def dict_cache() -> DictCache:
    return DictCache()


@pytest.fixture
def context(settings, embedder, llm):
    ctx = build_service_context(
        settings,
        embedder=embedder,
        llm=llm,
        graph_stores=[NetworkXGraphStore()],
        cache=NullCache(),
    )
    yield ctx
    ctx.close()


@pytest.fixture
def engine(context) -> WorkflowEngine:
    return WorkflowEngine(context)


@pytest.fixture
def rfp_file(tmp_path) -> Path:
    path = tmp_path / "uploads" / "portal_rfp.txt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(RFP_TEXT, encoding="utf-8")
    return path
