from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .exceptions import CollaboratorError, ConfigurationError, ExtractionError
from .llm_output import parse_llm_json
from .models import normalize_priority
from .rag_pipeline import answer_question

if TYPE_CHECKING:
    from .context import ServiceContext
    from .vector_store import EmbeddedSpans


logger = logging.getLogger(__name__)

ANSWER_THRESHOLD = 0.3
DIRECT_ANSWER_THRESHOLD = 0.8
COMPLETE_ANSWER_THRESHOLD = 0.7
MAX_ANALYSIS_CHARS = 12000


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def flatten_requirements(analysis: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Requirements as flat records. Accepts ``requirements`` either grouped by
    category (``{"technical": [...], ...}``) or as a plain list.
    """
    grouped = analysis.get("requirements") if isinstance(analysis, dict) else None
    if isinstance(grouped, list):
        grouped = {"general": grouped}
    if not isinstance(grouped, dict):
        return []

    flat: List[Dict[str, Any]] = []
    for category, items in grouped.items():
        for i, item in enumerate(_as_list(items), start=1):
            if isinstance(item, str):
                item = {"description": item}
            if not isinstance(item, dict):
                continue
            description = str(item.get("description") or "").strip()
            if not description:
                continue
            flat.append(
                {
                    "requirement_id": str(item.get("id") or f"{category}_{i:03d}"),
                    "category": str(category),
                    "description": description,
                    "priority": normalize_priority(item.get("priority")),
                    "complexity": str(item.get("complexity") or "medium"),
                    "mandatory": bool(item.get("mandatory", False)),
                    "source_document_id": item.get("source_document_id"),
                }
            )
    return flat


def flatten_questions(questions: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Questions from ``question_categories`` as flat records; blank questions are dropped."""
    categories = questions.get("question_categories") if isinstance(questions, dict) else None
    if not isinstance(categories, dict):
        return []

    flat: List[Dict[str, Any]] = []
    for category, items in categories.items():
        for i, item in enumerate(_as_list(items), start=1):
            if isinstance(item, str):
                item = {"question": item}
            if not isinstance(item, dict):
                continue
            text = str(item.get("question") or item.get("question_text") or "").strip()
            if not text:
                continue
            flat.append(
                {
                    "question_id": str(item.get("id") or f"{category}_q_{i:03d}"),
                    "category": str(category),
                    "question_text": text,
                    "rationale": item.get("rationale"),
                    "priority": normalize_priority(item.get("priority")),
                    "impact": item.get("impact"),
                    "related_requirements": [str(r) for r in _as_list(item.get("related_requirements"))],
                }
            )
    return flat


def flatten_answers(answers: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not isinstance(answers, dict):
        return []
    return [
        {
            "question_id": a.get("question_id"),
            "answer_text": a.get("answer", ""),
            "confidence_score": a.get("confidence", 0.0),
            "answer_type": a.get("answer_type", "direct"),
            "completeness": a.get("completeness", "complete"),
            "sources": a.get("sources", []),
        }
        for a in _as_list(answers.get("answered_questions"))
        if isinstance(a, dict)
    ]


class StepAgent:
    """
    One LLM-backed pipeline step.

    ``execute`` retries transient LLM failures with a linear back-off and
    returns the parsed JSON object, or ``{"content": raw}`` when the reply is
    not a JSON object.
    """

    name = "step_agent"
    system_prompt = ""

    def __init__(self, context: "ServiceContext"):
        self.context = context
        self.retry_attempts = max(1, context.settings.agent_retry_attempts)
        self.retry_delay = context.settings.agent_retry_delay_seconds

    def build_prompt(self, input_text: str, previous: Optional[Dict[str, Any]] = None) -> str:
        parts = []
        if previous:
            parts.append("Previous Analysis Results:")
            for key, value in previous.items():
                parts.append(f"{key}: {json.dumps(value, ensure_ascii=False, indent=2, default=str)}")
            parts.append("")
        parts.append("Current Input:")
        parts.append(input_text)
        return "\n".join(parts)

    def process_result(self, raw: str) -> Dict[str, Any]:
        try:
            data = parse_llm_json(raw)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
        logger.warning("Agent %s returned non-JSON output; keeping raw content", self.name)
        return {"content": raw, "agent": self.name}

    def execute(self, input_text: str, previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        prompt = self.build_prompt(input_text, previous)
        for attempt in range(1, self.retry_attempts + 1):
            try:
                raw = self.context.llm.complete(prompt, system_prompt=self.system_prompt)
            except CollaboratorError as e:
                logger.warning("Agent %s attempt %d failed: %s", self.name, attempt, e)
                if attempt == self.retry_attempts:
                    logger.error("Agent %s failed after %d attempts", self.name, self.retry_attempts)
                    raise
                time.sleep(self.retry_delay * attempt)
                continue
            logger.info("Agent %s completed (attempt=%d, length=%d)", self.name, attempt, len(raw))
            return self.process_result(raw)
        raise CollaboratorError(f"Agent {self.name} made no attempts")


class DocumentIngestionAgent(StepAgent):
    name = "document_ingestion"
    system_prompt = (
        "You are a document ingestion agent that analyzes RFP (Request for Proposal) "
        "documents. Identify requirements, questions, deadlines and evaluation "
        "criteria. Return ONLY JSON in this format:\n"
        '{"document_type": "rfp|supporting|other", "title": "...", "overview": "...", '
        '"key_requirements": [], "questions": [], "deadlines": [], '
        '"technical_specs": [], "business_requirements": [], '
        '"compliance_requirements": [], "budget_info": "", '
        '"evaluation_criteria": [], "confidence": 0.9}'
    )

    def _index_graph(
        self,
        workflow_id: str,
        document: Dict[str, Any],
        text: str,
        metadata: Dict[str, Any],
        embedded: EmbeddedSpans,
    ) -> Dict[str, Any]:
        graph_index = self.context.graph_index
        if not graph_index.is_initialized:
            return {}
        spans, embeddings = embedded
        return graph_index.process_document(
            workflow_id,
            document["original_name"],
            text,
            spans,
            embeddings,
            metadata=metadata,
            document_id=document["id"],
        )

    def _ingest_one(self, workflow_id: str, document: Dict[str, Any]) -> Dict[str, Any]:
        data = self.context.data
        data.update_document(workflow_id, document["id"], processing_status="processing")

        extracted = self.context.text_extractor.extract(document["file_path"], document.get("mime_type"))
        if not extracted.text.strip():
            raise ExtractionError(f"No text extracted from {document['original_name']}")

        try:
            analysis = self.execute(extracted.text[:MAX_ANALYSIS_CHARS])
        except CollaboratorError as e:
            logger.warning("Document analysis unavailable for %s: %s", document["original_name"], e)
            analysis = {}

        metadata = {**extracted.metadata, "original_name": document["original_name"]}
        vector_store = self.context.vector_store
        try:
            # one embedding pass feeds both the vector store and the graph
            embedded = vector_store.embed_document(extracted.text)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning("Embedding failed for %s (continuing unindexed): %s", document["id"], e)
            embedded = None

        graph_summary: Dict[str, Any] = {}
        if embedded is not None:
            if not vector_store.vectorize_document(
                workflow_id, document["id"], extracted.text, metadata, embedded=embedded
            ):
                logger.warning("Document %s was not vectorized", document["id"])
            try:
                graph_summary = self._index_graph(workflow_id, document, extracted.text, metadata, embedded)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.warning("Graph indexing failed for %s (continuing): %s", document["id"], e)

        data.update_document(
            workflow_id,
            document["id"],
            processing_status="completed",
            processed_content=extracted.text,
            structured_data=analysis,
            metadata={**(document.get("metadata") or {}), **metadata},
        )
        return {
            **analysis,
            "document_id": document["id"],
            "file_name": document["original_name"],
            "document_type": analysis.get("document_type") or document.get("document_type") or "rfp",
            "overview": analysis.get("overview") or extracted.text[:500],
            "entity_count": len(graph_summary.get("entities", [])),
        }

    def run(self, workflow_id: str, documents: List[Dict[str, Any]]) -> Dict[str, Any]:
        processed: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        for document in documents:
            logger.info("Ingesting document %s for workflow %s", document["original_name"], workflow_id)
            try:
                processed.append(self._ingest_one(workflow_id, document))
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error("Error processing document %s: %s", document["original_name"], e)
                self.context.data.update_document(workflow_id, document["id"], processing_status="failed")
                failed.append({"document_id": document["id"], "file_name": document["original_name"], "error": str(e)})
        return {
            "documents": processed,
            "failed_documents": failed,
            "processed": len(processed),
            "failed": len(failed),
        }


class RequirementsAnalysisAgent(StepAgent):
    name = "requirements_analysis"
    system_prompt = (
        "You are a requirements analysis agent. Analyze the RFP documents and "
        "return ONLY JSON in this format:\n"
        '{"project_overview": {"title": "", "description": "", "scope": "", "objectives": []}, '
        '"requirements": {"technical": [{"id": "tech_001", "description": "", '
        '"priority": "high|medium|low", "complexity": "high|medium|low"}], '
        '"business": [], "compliance": [{"id": "comp_001", "description": "", "mandatory": true}]}, '
        '"timeline": {}, "budget": {}, '
        '"risk_assessment": {"overall_complexity": "high|medium|low"}, '
        '"evaluation_criteria": [], "confidence": 0.9}'
    )

    @staticmethod
    def combine_documents(documents: List[Dict[str, Any]]) -> str:
        lines = ["=== RFP DOCUMENTS ANALYSIS ===", ""]
        sections = [
            ("key_requirements", "Key Requirements"),
            ("technical_specs", "Technical Specifications"),
            ("business_requirements", "Business Requirements"),
            ("deadlines", "Deadlines"),
            ("evaluation_criteria", "Evaluation Criteria"),
        ]
        for index, doc in enumerate(documents, start=1):
            lines.append(f"--- Document {index}: {doc.get('file_name')} ---")
            lines.append(f"Type: {doc.get('document_type')}")
            lines.append(f"Overview: {doc.get('overview')}")
            for key, title in sections:
                items = [str(x) for x in _as_list(doc.get(key))]
                if items:
                    lines.append(f"{title}:")
                    lines.extend(f"- {item}" for item in items)
            lines.append("---")
            lines.append("")
        return "\n".join(lines)

    def run(self, ingestion: Dict[str, Any], project_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        documents = ingestion.get("documents", [])
        analysis = self.execute(
            self.combine_documents(documents),
            {"project_context": project_context} if project_context else None,
        )
        analysis["document_insights"] = {
            "total_documents": len(documents),
            "document_types": sorted({str(d.get("document_type")) for d in documents}),
        }
        return analysis


class ClarificationQuestionsAgent(StepAgent):
    name = "clarification_questions"
    system_prompt = (
        "You are a clarification questions agent. Identify ambiguous, incomplete "
        "or unclear requirements and return ONLY JSON in this format:\n"
        '{"question_categories": {"technical": [{"id": "tech_q_001", "question": "", '
        '"rationale": "", "priority": "high|medium|low", "impact": "", '
        '"related_requirements": ["tech_001"]}], "business": [], "timeline": [], '
        '"budget": [], "compliance": []}, "confidence": 0.88}'
    )

    def run(self, analysis: Dict[str, Any]) -> Dict[str, Any]:
        requirements = flatten_requirements(analysis)
        lines = [
            f"- [{r['requirement_id']}] ({r['category']}, {r['priority']}) {r['description']}"
            for r in requirements
        ]
        overview = analysis.get("project_overview") or analysis.get("content") or {}
        input_text = "Project overview:\n{}\n\nRequirements:\n{}".format(
            json.dumps(overview, ensure_ascii=False, default=str),
            "\n".join(lines) or "(none identified)",
        )
        result = self.execute(input_text)
        if not isinstance(result.get("question_categories"), dict):
            result["question_categories"] = {}
        return result


class AnswerExtractionAgent(StepAgent):
    """Answers each clarification question from the workflow's own documents."""

    name = "answer_extraction"

    def run(
        self,
        workflow_id: str,
        questions: List[Dict[str, Any]],
        project_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        answered: List[Dict[str, Any]] = []
        unanswered: List[Dict[str, Any]] = []
        logger.info("Processing %d questions with RAG for workflow %s", len(questions), workflow_id)

        for question in questions:
            text = question["question_text"]
            try:
                result = answer_question(
                    self.context.coordinator,
                    self.context.llm,
                    workflow_id,
                    text,
                    project_context=project_context,
                )
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error("Error answering question %s: %s", question["question_id"], e)
                unanswered.append(
                    {
                        "question_id": question["question_id"],
                        "question": text,
                        "reason": "Error processing question",
                        "priority": question.get("priority", "medium"),
                    }
                )
                continue

            confidence = result["confidence"]
            if confidence > ANSWER_THRESHOLD:
                answered.append(
                    {
                        "question_id": question["question_id"],
                        "question": text,
                        "answer": result["answer"],
                        "confidence": confidence,
                        "sources": result["sources"],
                        "answer_type": "direct" if confidence > DIRECT_ANSWER_THRESHOLD else "inferred",
                        "completeness": "complete" if confidence > COMPLETE_ANSWER_THRESHOLD else "partial",
                    }
                )
            else:
                unanswered.append(
                    {
                        "question_id": question["question_id"],
                        "question": text,
                        "reason": "No relevant information found" if confidence == 0 else "Low confidence answer",
                        "priority": question.get("priority", "medium"),
                    }
                )

        average = sum(a["confidence"] for a in answered) / len(answered) if answered else 0.0
        return {
            "answered_questions": answered,
            "unanswered_questions": unanswered,
            "answer_summary": {
                "total_questions": len(questions),
                "answered": len(answered),
                "unanswered": len(unanswered),
                "average_confidence": average,
            },
            "confidence": average,
        }


class ResponseCompilationAgent(StepAgent):
    name = "response_compilation"
    system_prompt = (
        "You are a response compilation agent. Organize the analysis, questions "
        "and extracted answers into a structured proposal. Return ONLY JSON in "
        "this format:\n"
        '{"executive_summary": {"project_title": "", "company_response": "", '
        '"key_strengths": [], "confidence_level": "high|medium|low"}, '
        '"proposal_structure": {"sections": [{"section_id": "", "title": "", '
        '"order": 1, "status": "complete|partial|needs_input", "content": ""}]}, '
        '"question_responses": [], "gaps": [], "confidence": 0.95}'
    )

    def run(
        self,
        analysis: Dict[str, Any],
        questions: Dict[str, Any],
        answers: Dict[str, Any],
        project_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        answered = _as_list(answers.get("answered_questions"))
        unanswered = _as_list(answers.get("unanswered_questions"))
        payload = {
            "project_overview": analysis.get("project_overview"),
            "requirements": flatten_requirements(analysis),
            "questions": flatten_questions(questions),
            "answered_questions": [
                {k: a.get(k) for k in ("question_id", "question", "answer", "confidence")}
                for a in answered
            ],
            "unanswered_questions": unanswered,
        }
        response = self.execute(
            json.dumps(payload, ensure_ascii=False, default=str),
            {"project_context": project_context} if project_context else None,
        )

        if not response.get("question_responses"):
            response["question_responses"] = [
                {
                    "question_id": a.get("question_id"),
                    "original_question": a.get("question"),
                    "response": a.get("answer"),
                    "confidence": a.get("confidence"),
                    "status": "answered" if a.get("completeness") == "complete" else "partial",
                    "sources": a.get("sources", []),
                }
                for a in answered
            ]
        if not response.get("gaps"):
            response["gaps"] = [
                {"question_id": u.get("question_id"), "reason": u.get("reason")} for u in unanswered
            ]
        return response


__all__ = [
    "StepAgent",
    "DocumentIngestionAgent",
    "RequirementsAnalysisAgent",
    "ClarificationQuestionsAgent",
    "AnswerExtractionAgent",
    "ResponseCompilationAgent",
    "flatten_requirements",
    "flatten_questions",
    "flatten_answers",
]
