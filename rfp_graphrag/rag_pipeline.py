from typing import Any, Dict, List, Optional
import logging

from .exceptions import CollaboratorError
from .hybrid_retrieval import HybridRetrievalCoordinator, SearchOptions
from .llm_client import LLMClient
from .models import HybridResult


logger = logging.getLogger(__name__)

EXCERPT_CHARS = 200
NO_CONTEXT_ANSWER = "I couldn't find relevant information in the documents to answer this question."
LLM_FAILURE_ANSWER = "I apologize, but I encountered an error while generating an answer to this question."


SYSTEM_PROMPT = (
    "You are an assistant that answers questions about an RFP using only the "
    "passages retrieved from the submitted documents. "
    "Ground your answer in the passages, be concise, and say clearly when the "
    "documents do not contain the information."
)


def _build_messages(
    question: str,
    passages: List[HybridResult],
    project_context: Optional[Dict[str, Any]] = None,
) -> List[dict]:
    messages: List[dict] = [{"role": "system", "content": SYSTEM_PROMPT}]

    if project_context:
        context_lines = "\n".join(f"{k}: {v}" for k, v in project_context.items())
        messages.append({"role": "system", "content": f"Project context:\n{context_lines}"})

    context_block = "\n\n---\n\n".join(
        f"[Passage {i}] (document {p.document_id or 'unknown'})\n{p.content}"
        for i, p in enumerate(passages, start=1)
    )
    messages.append(
        {
            "role": "system",
            "content": (
                "Here are the passages retrieved from the RFP documents:\n\n"
                f"{context_block}\n\n"
                "Use them when answering."
            ),
        }
    )
    messages.append({"role": "user", "content": question})
    return messages


def answer_confidence(passages: List[HybridResult]) -> float:
    """
    Mean of each passage's best component score, boosted by 20% and capped at 1.
    """
    if not passages:
        return 0.0
    best = [max(p.vector_score, p.score) for p in passages]
    return min(sum(best) / len(best) * 1.2, 1.0)


def source_excerpts(passages: List[HybridResult]) -> List[Dict[str, Any]]:
    return [
        {
            "document_id": p.document_id,
            "excerpt": p.content[:EXCERPT_CHARS] + "...",
            "similarity": max(p.vector_score, p.score),
        }
        for p in passages
    ]


def answer_question(
    coordinator: HybridRetrievalCoordinator,
    llm: LLMClient,
    workflow_id: str,
    question: str,
    k: int = 3,
    project_context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Answer one question over the workflow's documents.

    Returns ``{"answer", "confidence", "sources"}``; an LLM failure yields a
    fixed apology with zero confidence instead of raising.
    """
    logger.info("answer_question called for workflow %s with question: %s", workflow_id, question[:80])

    passages = coordinator.hybrid_search(question, workflow_id, SearchOptions(limit=k))
    logger.info("Retrieved %d passage(s) for workflow %s", len(passages), workflow_id)
    if not passages:
        return {"answer": NO_CONTEXT_ANSWER, "confidence": 0.0, "sources": []}

    messages = _build_messages(question, passages, project_context)
    try:
        answer = llm.chat(messages)
    except CollaboratorError as e:
        logger.warning("LLM failed to answer question for workflow %s: %s", workflow_id, e)
        return {"answer": LLM_FAILURE_ANSWER, "confidence": 0.0, "sources": []}

    logger.info("LLM answered for workflow %s (response length=%d chars)", workflow_id, len(answer))
    return {
        "answer": answer.strip(),
        "confidence": answer_confidence(passages),
        "sources": source_excerpts(passages),
    }


__all__ = ["answer_question", "answer_confidence", "SYSTEM_PROMPT"]
