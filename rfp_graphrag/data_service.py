from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select

from .cache import Cache, NullCache
from .config import Settings
from .database import (
    Answer,
    Document,
    Question,
    Requirement,
    Workflow,
    WorkflowDatabaseManager,
    WorkflowResult,
    utcnow,
)
from .exceptions import WorkflowNotFoundError
from .models import WorkflowStatus, clamp_progress, normalize_priority


logger = logging.getLogger(__name__)

LIST_VERSION_KEY = "workflows:list:version"

_WORKFLOW_FIELDS = {
    "status",
    "current_step",
    "progress",
    "project_context",
    "start_time",
    "end_time",
    "duration_ms",
    "error_message",
}
_DOCUMENT_FIELDS = {
    "processing_status",
    "processed_content",
    "structured_data",
    "metadata",
    "file_size",
    "mime_type",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _workflow_dict(row: Workflow) -> Dict[str, Any]:
    return {
        "id": row.id,
        "status": row.status,
        "current_step": row.current_step,
        "progress": row.progress,
        "project_context": row.project_context or {},
        "start_time": _iso(row.start_time),
        "end_time": _iso(row.end_time),
        "duration_ms": row.duration_ms,
        "error_message": row.error_message,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _document_dict(row: Document) -> Dict[str, Any]:
    return {
        "id": row.id,
        "workflow_id": row.workflow_id,
        "original_name": row.original_name,
        "file_path": row.file_path,
        "file_size": row.file_size,
        "mime_type": row.mime_type,
        "document_type": row.document_type,
        "processing_status": row.processing_status,
        "processed_content": row.processed_content,
        "metadata": row.doc_metadata or {},
        "structured_data": row.structured_data,
        "created_at": _iso(row.created_at),
    }


def _requirement_dict(row: Requirement) -> Dict[str, Any]:
    return {
        "requirement_id": row.requirement_id,
        "category": row.category,
        "description": row.description,
        "priority": row.priority,
        "complexity": row.complexity,
        "mandatory": row.mandatory,
        "source_document_id": row.source_document_id,
    }


def _question_dict(row: Question) -> Dict[str, Any]:
    return {
        "question_id": row.question_id,
        "category": row.category,
        "question_text": row.question_text,
        "rationale": row.rationale,
        "priority": row.priority,
        "impact": row.impact,
        "related_requirements": row.related_requirements or [],
    }


def _answer_dict(row: Answer) -> Dict[str, Any]:
    return {
        "question_id": row.question_id,
        "answer_text": row.answer_text,
        "confidence_score": row.confidence_score,
        "answer_type": row.answer_type,
        "completeness": row.completeness,
        "sources": row.sources or [],
    }


def _result_dict(row: WorkflowResult) -> Dict[str, Any]:
    return {
        "step_name": row.step_name,
        "result_data": row.result_data,
        "confidence_score": row.confidence_score,
        "processing_time_ms": row.processing_time_ms,
        "created_at": _iso(row.created_at),
    }


class WorkflowDataService:
    """
    Durable workflow records with cache-aside reads.

    Every write invalidates the affected cache keys and bumps the version
    embedded in workflow list keys.
    """

    def __init__(
        self,
        db: WorkflowDatabaseManager,
        cache: Optional[Cache] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.cache = cache or NullCache()
        self.workflow_ttl = settings.cache_workflow_ttl if settings else 3600
        self.list_ttl = settings.cache_list_ttl if settings else 300

    def _invalidate(self, workflow_id: str, *parts: str) -> None:
        keys = [f"workflow:{workflow_id}"] + [f"workflow:{workflow_id}:{p}" for p in parts]
        self.cache.delete(*keys)
        self.cache.increment(LIST_VERSION_KEY)

    def _cached(self, key: str, loader, ttl: Optional[int] = None):
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        value = loader()
        if value is not None:
            self.cache.set(key, value, ttl or self.workflow_ttl)
        return value

    # --- workflows -------------------------------------------------------

    def create_workflow(self, workflow_id: str, project_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self.db.session(workflow_id, create=True) as session:
            row = Workflow(
                id=workflow_id,
                status=WorkflowStatus.PENDING.value,
                progress=0,
                project_context=project_context or {},
            )
            session.add(row)
            session.flush()
            data = _workflow_dict(row)
        self._invalidate(workflow_id)
        logger.info("Created workflow %s", workflow_id)
        return data

    def update_workflow(self, workflow_id: str, **updates: Any) -> Dict[str, Any]:
        unknown = set(updates) - _WORKFLOW_FIELDS
        if unknown:
            raise ValueError(f"Unknown workflow fields: {sorted(unknown)}")

        with self.db.session(workflow_id) as session:
            row = session.get(Workflow, workflow_id)
            if row is None:
                raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

            was_running = row.status == WorkflowStatus.RUNNING.value
            status_changes = "status" in updates and updates["status"] != row.status

            for name, value in updates.items():
                if name == "progress":
                    value = clamp_progress(value)
                    previous = clamp_progress(row.progress)
                    if was_running and not status_changes and value < previous:
                        value = previous
                setattr(row, name, value)

            if row.status == WorkflowStatus.RUNNING.value and row.error_message:
                logger.warning(
                    "Workflow %s written as running with an error; marking failed", workflow_id
                )
                row.status = WorkflowStatus.FAILED.value
                if row.end_time is None:
                    row.end_time = utcnow()

            row.updated_at = utcnow()
            session.flush()
            data = _workflow_dict(row)
        self._invalidate(workflow_id)
        return data

    def get_workflow(self, workflow_id: str, use_cache: bool = True) -> Optional[Dict[str, Any]]:
        def load() -> Optional[Dict[str, Any]]:
            if not self.db.exists(workflow_id):
                return None
            with self.db.session(workflow_id) as session:
                row = session.get(Workflow, workflow_id)
                return _workflow_dict(row) if row else None

        if not use_cache:
            return load()
        return self._cached(f"workflow:{workflow_id}", load)

    def require_workflow(self, workflow_id: str, use_cache: bool = True) -> Dict[str, Any]:
        workflow = self.get_workflow(workflow_id, use_cache=use_cache)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def list_workflow_ids(self) -> List[str]:
        return self.db.list_workflow_ids()

    def list_workflows(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        version = self.cache.get_int(LIST_VERSION_KEY)
        key = f"workflows:list:v{version}:{limit}:{offset}"

        def load() -> List[Dict[str, Any]]:
            workflows = []
            for workflow_id in self.db.list_workflow_ids():
                workflow = self.get_workflow(workflow_id)
                if workflow is not None:
                    workflows.append(workflow)
            workflows.sort(key=lambda w: w["created_at"] or "", reverse=True)
            return workflows[offset : offset + limit]

        return self._cached(key, load, self.list_ttl)

    def delete_workflow(self, workflow_id: str) -> bool:
        deleted = self.db.delete(workflow_id)
        self._invalidate(workflow_id, "documents", "requirements", "questions", "answers", "results")
        return deleted

    # --- documents -------------------------------------------------------

    def create_document(
        self,
        workflow_id: str,
        document_id: str,
        original_name: str,
        file_path: str,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        document_type: str = "rfp",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self.db.session(workflow_id) as session:
            row = Document(
                id=document_id,
                workflow_id=workflow_id,
                original_name=original_name,
                file_path=file_path,
                file_size=file_size,
                mime_type=mime_type,
                document_type=document_type,
                processing_status="pending",
                doc_metadata=metadata or {},
            )
            session.add(row)
            session.flush()
            data = _document_dict(row)
        self._invalidate(workflow_id, "documents")
        return data

    def update_document(self, workflow_id: str, document_id: str, **updates: Any) -> Dict[str, Any]:
        unknown = set(updates) - _DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        with self.db.session(workflow_id) as session:
            row = session.get(Document, document_id)
            if row is None:
                raise KeyError(f"Unknown document: {document_id}")
            for name, value in updates.items():
                setattr(row, "doc_metadata" if name == "metadata" else name, value)
            row.updated_at = utcnow()
            session.flush()
            data = _document_dict(row)
        self._invalidate(workflow_id, "documents")
        return data

    def get_documents(self, workflow_id: str) -> List[Dict[str, Any]]:
        def load() -> List[Dict[str, Any]]:
            with self.db.session(workflow_id) as session:
                rows = session.scalars(
                    select(Document).where(Document.workflow_id == workflow_id).order_by(Document.created_at)
                ).all()
                return [_document_dict(r) for r in rows]

        return self._cached(f"workflow:{workflow_id}:documents", load)

    # --- analysis outputs ------------------------------------------------

    def save_requirements(self, workflow_id: str, requirements: Iterable[Dict[str, Any]]) -> int:
        with self.db.session(workflow_id) as session:
            session.execute(delete(Requirement).where(Requirement.workflow_id == workflow_id))
            rows = [
                Requirement(
                    workflow_id=workflow_id,
                    requirement_id=str(r.get("requirement_id") or r.get("id") or f"REQ-{i + 1:03d}"),
                    category=str(r.get("category") or "general"),
                    description=str(r.get("description") or r.get("text") or ""),
                    priority=normalize_priority(r.get("priority")),
                    complexity=str(r.get("complexity") or "medium"),
                    mandatory=bool(r.get("mandatory", False)),
                    source_document_id=r.get("source_document_id"),
                )
                for i, r in enumerate(requirements)
            ]
            session.add_all(rows)
        self._invalidate(workflow_id, "requirements")
        logger.info("Saved %d requirements for workflow %s", len(rows), workflow_id)
        return len(rows)

    def get_requirements(self, workflow_id: str) -> List[Dict[str, Any]]:
        def load():
            with self.db.session(workflow_id) as session:
                rows = session.scalars(select(Requirement).order_by(Requirement.id)).all()
                return [_requirement_dict(r) for r in rows]

        return self._cached(f"workflow:{workflow_id}:requirements", load)

    def save_questions(self, workflow_id: str, questions: Iterable[Dict[str, Any]]) -> int:
        with self.db.session(workflow_id) as session:
            session.execute(delete(Question).where(Question.workflow_id == workflow_id))
            rows = [
                Question(
                    workflow_id=workflow_id,
                    question_id=str(q.get("question_id") or q.get("id") or f"Q-{i + 1:03d}"),
                    category=str(q.get("category") or "general"),
                    question_text=str(q.get("question_text") or q.get("question") or ""),
                    rationale=q.get("rationale"),
                    priority=normalize_priority(q.get("priority")),
                    impact=q.get("impact"),
                    related_requirements=list(q.get("related_requirements") or []),
                )
                for i, q in enumerate(questions)
            ]
            session.add_all(rows)
        self._invalidate(workflow_id, "questions")
        logger.info("Saved %d questions for workflow %s", len(rows), workflow_id)
        return len(rows)

    def get_questions(self, workflow_id: str) -> List[Dict[str, Any]]:
        def load():
            with self.db.session(workflow_id) as session:
                rows = session.scalars(select(Question).order_by(Question.id)).all()
                return [_question_dict(r) for r in rows]

        return self._cached(f"workflow:{workflow_id}:questions", load)

    def save_answers(self, workflow_id: str, answers: Iterable[Dict[str, Any]]) -> int:
        with self.db.session(workflow_id) as session:
            session.execute(delete(Answer).where(Answer.workflow_id == workflow_id))
            rows = [
                Answer(
                    workflow_id=workflow_id,
                    question_id=str(a.get("question_id") or ""),
                    answer_text=str(a.get("answer_text") or a.get("answer") or ""),
                    confidence_score=max(0.0, min(1.0, float(a.get("confidence_score") or 0.0))),
                    answer_type=str(a.get("answer_type") or "direct"),
                    completeness=str(a.get("completeness") or "complete"),
                    sources=list(a.get("sources") or []),
                )
                for a in answers
            ]
            session.add_all(rows)
        self._invalidate(workflow_id, "answers")
        logger.info("Saved %d answers for workflow %s", len(rows), workflow_id)
        return len(rows)

    def get_answers(self, workflow_id: str) -> List[Dict[str, Any]]:
        def load():
            with self.db.session(workflow_id) as session:
                rows = session.scalars(select(Answer).order_by(Answer.id)).all()
                return [_answer_dict(r) for r in rows]

        return self._cached(f"workflow:{workflow_id}:answers", load)

    # --- step results ----------------------------------------------------

    def save_step_result(
        self,
        workflow_id: str,
        step_name: str,
        result_data: Dict[str, Any],
        confidence_score: Optional[float] = None,
        processing_time_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        with self.db.session(workflow_id) as session:
            row = WorkflowResult(
                workflow_id=workflow_id,
                step_name=step_name,
                result_data=result_data,
                confidence_score=confidence_score,
                processing_time_ms=processing_time_ms,
            )
            session.add(row)
            session.flush()
            data = _result_dict(row)
        self._invalidate(workflow_id, "results")
        return data

    def get_step_results(self, workflow_id: str) -> List[Dict[str, Any]]:
        def load():
            with self.db.session(workflow_id) as session:
                rows = session.scalars(select(WorkflowResult).order_by(WorkflowResult.id)).all()
                return [_result_dict(r) for r in rows]

        return self._cached(f"workflow:{workflow_id}:results", load)

    def get_latest_step_result(self, workflow_id: str, step_name: str) -> Optional[Dict[str, Any]]:
        latest = None
        for result in self.get_step_results(workflow_id):
            if result["step_name"] == step_name:
                latest = result
        return latest

    def get_latest_results(self, workflow_id: str) -> Dict[str, Dict[str, Any]]:
        """Latest result per step name."""
        return {r["step_name"]: r for r in self.get_step_results(workflow_id)}


__all__ = ["WorkflowDataService", "LIST_VERSION_KEY", "parse_timestamp"]
