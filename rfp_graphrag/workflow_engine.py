from __future__ import annotations

import logging
import mimetypes
import os
import random
import string
import threading
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .agents import (
    AnswerExtractionAgent,
    ClarificationQuestionsAgent,
    DocumentIngestionAgent,
    RequirementsAnalysisAgent,
    ResponseCompilationAgent,
    StepAgent,
    flatten_answers,
    flatten_questions,
    flatten_requirements,
)
from .context import ServiceContext
from .data_service import parse_timestamp
from .database import utcnow
from .exceptions import (
    ResumePreconditionError,
    WorkflowBusyError,
    WorkflowInterruptedError,
    WorkflowNotFoundError,
    WorkflowStepError,
)
from .models import (
    STEP_CONFIDENCE,
    STEP_PROGRESS,
    STEP_SEQUENCE,
    WorkflowStatus,
    WorkflowStep,
    validate_workflow_id,
)
from .workflow_repair import repair_workflows


logger = logging.getLogger(__name__)

NO_DOCUMENTS_MESSAGE = "Document ingestion failed - no documents could be processed"
NO_QUESTIONS_MESSAGE = "Clarification questions generation failed - no valid questions produced"

DocumentSpec = Union[str, Path, Dict[str, Any]]
_ID_ALPHABET = string.ascii_lowercase + string.digits


class WorkflowEngine:
    """
    Drives one RFP workflow through its five steps.

    Durable state lives in the per-workflow database; this object keeps an
    in-memory mirror of the workflows it has touched and the set of workflows
    currently executing in this process.
    """

    def __init__(self, context: ServiceContext, agents: Optional[Dict[WorkflowStep, StepAgent]] = None):
        self.context = context
        self.data = context.data
        self.settings = context.settings
        self.agents: Dict[WorkflowStep, Any] = {
            WorkflowStep.DOCUMENT_INGESTION: DocumentIngestionAgent(context),
            WorkflowStep.REQUIREMENTS_ANALYSIS: RequirementsAnalysisAgent(context),
            WorkflowStep.CLARIFICATION_QUESTIONS: ClarificationQuestionsAgent(context),
            WorkflowStep.ANSWER_EXTRACTION: AnswerExtractionAgent(context),
            WorkflowStep.RESPONSE_COMPILATION: ResponseCompilationAgent(context),
        }
        if agents:
            self.agents.update(agents)

        self._states: Dict[str, Dict[str, Any]] = {}
        self._active: set = set()
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.RLock()

        self._handlers: Dict[WorkflowStep, Callable[[str, Dict[WorkflowStep, Any], Dict[str, Any]], Dict[str, Any]]] = {
            WorkflowStep.DOCUMENT_INGESTION: self._run_ingestion,
            WorkflowStep.REQUIREMENTS_ANALYSIS: self._run_requirements,
            WorkflowStep.CLARIFICATION_QUESTIONS: self._run_questions,
            WorkflowStep.ANSWER_EXTRACTION: self._run_answers,
            WorkflowStep.RESPONSE_COMPILATION: self._run_response,
        }

    # --- state helpers ---------------------------------------------------

    def _mirror(self, workflow: Dict[str, Any]) -> None:
        with self._lock:
            state = self._states.setdefault(workflow["id"], {"results": {}})
            state["workflow"] = workflow

    def _mirror_result(self, workflow_id: str, step: WorkflowStep, result: Dict[str, Any]) -> None:
        with self._lock:
            state = self._states.setdefault(workflow_id, {"results": {}})
            state["results"][step.value] = result

    def _update(self, workflow_id: str, **updates: Any) -> Dict[str, Any]:
        workflow = self.data.update_workflow(workflow_id, **updates)
        self._mirror(workflow)
        return workflow

    def apply_repair(self, workflow: Dict[str, Any]) -> None:
        """Mirror a repaired workflow row into the in-memory state."""
        with self._lock:
            if workflow["id"] in self._states:
                self._states[workflow["id"]]["workflow"] = workflow

    def is_workflow_active(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._active

    def _claim(self, workflow_id: str) -> None:
        with self._lock:
            if workflow_id in self._active:
                raise WorkflowBusyError(f"Workflow {workflow_id} is already running")
            self._active.add(workflow_id)

    def _release(self, workflow_id: str) -> None:
        with self._lock:
            self._active.discard(workflow_id)

    # --- submission ------------------------------------------------------

    @staticmethod
    def generate_workflow_id() -> str:
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"rfp_{int(time.time() * 1000)}_{suffix}"

    @staticmethod
    def _normalize_document(spec: DocumentSpec) -> Dict[str, Any]:
        if isinstance(spec, (str, Path)):
            spec = {"file_path": str(spec)}
        path = str(spec.get("file_path") or spec.get("path") or "")
        if not path:
            raise ValueError("Document is missing a file path")
        original_name = spec.get("original_name") or os.path.basename(path)
        mime_type = spec.get("mime_type") or mimetypes.guess_type(path)[0]
        return {
            "id": spec.get("id") or f"doc_{uuid.uuid4().hex[:12]}",
            "original_name": original_name,
            "file_path": path,
            "file_size": spec.get("file_size") or (os.path.getsize(path) if os.path.exists(path) else None),
            "mime_type": mime_type,
            "document_type": spec.get("document_type") or "rfp",
            "metadata": spec.get("metadata") or {},
        }

    def submit_workflow(
        self,
        documents: Iterable[DocumentSpec],
        project_context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> str:
        workflow_id = validate_workflow_id(workflow_id or self.generate_workflow_id())
        docs = [self._normalize_document(d) for d in documents]

        workflow = self.data.create_workflow(workflow_id, project_context)
        for doc in docs:
            self.data.create_document(workflow_id, doc["id"], doc["original_name"], doc["file_path"],
                                      file_size=doc["file_size"], mime_type=doc["mime_type"],
                                      document_type=doc["document_type"], metadata=doc["metadata"])
        self._mirror(workflow)
        logger.info("Submitted workflow %s with %d document(s)", workflow_id, len(docs))
        return workflow_id

    # --- step handlers ---------------------------------------------------

    def _run_ingestion(self, workflow_id, outputs, workflow):
        documents = self.data.get_documents(workflow_id)
        result = self.agents[WorkflowStep.DOCUMENT_INGESTION].run(workflow_id, documents)
        if result["processed"] == 0:
            raise WorkflowStepError(WorkflowStep.DOCUMENT_INGESTION.value, NO_DOCUMENTS_MESSAGE)
        return result

    def _run_requirements(self, workflow_id, outputs, workflow):
        analysis = self.agents[WorkflowStep.REQUIREMENTS_ANALYSIS].run(
            outputs[WorkflowStep.DOCUMENT_INGESTION], workflow.get("project_context")
        )
        self.data.save_requirements(workflow_id, flatten_requirements(analysis))
        return analysis

    def _run_questions(self, workflow_id, outputs, workflow):
        result = self.agents[WorkflowStep.CLARIFICATION_QUESTIONS].run(
            outputs[WorkflowStep.REQUIREMENTS_ANALYSIS]
        )
        questions = flatten_questions(result)
        if not questions:
            raise WorkflowStepError(WorkflowStep.CLARIFICATION_QUESTIONS.value, NO_QUESTIONS_MESSAGE)
        self.data.save_questions(workflow_id, questions)
        return result

    def _run_answers(self, workflow_id, outputs, workflow):
        questions = flatten_questions(outputs[WorkflowStep.CLARIFICATION_QUESTIONS])
        result = self.agents[WorkflowStep.ANSWER_EXTRACTION].run(
            workflow_id, questions, workflow.get("project_context")
        )
        answers = flatten_answers(result)
        if not answers:
            logger.warning("No answers extracted for workflow %s; continuing", workflow_id)
        self.data.save_answers(workflow_id, answers)
        return result

    def _run_response(self, workflow_id, outputs, workflow):
        return self.agents[WorkflowStep.RESPONSE_COMPILATION].run(
            outputs[WorkflowStep.REQUIREMENTS_ANALYSIS],
            outputs[WorkflowStep.CLARIFICATION_QUESTIONS],
            outputs[WorkflowStep.ANSWER_EXTRACTION],
            workflow.get("project_context"),
        )

    # --- execution -------------------------------------------------------

    def _load_outputs(self, workflow_id: str, upto: int) -> Dict[WorkflowStep, Any]:
        latest = self.data.get_latest_results(workflow_id)
        return {
            step: latest[step.value]["result_data"]
            for step in STEP_SEQUENCE[:upto]
            if step.value in latest
        }

    def _execute(self, workflow_id: str, start_index: int, outputs: Dict[WorkflowStep, Any]) -> Dict[str, Any]:
        self._claim(workflow_id)
        try:
            return self._execute_claimed(workflow_id, start_index, outputs)
        finally:
            self._release(workflow_id)

    def _ensure_running(self, workflow_id: str) -> None:
        status = self.data.require_workflow(workflow_id, use_cache=False)["status"]
        if status != WorkflowStatus.RUNNING.value:
            raise WorkflowInterruptedError(workflow_id, status)

    def _execute_claimed(self, workflow_id, start_index, outputs) -> Dict[str, Any]:
        first = STEP_SEQUENCE[start_index]
        current = self.data.require_workflow(workflow_id, use_cache=False)
        if current["status"] == WorkflowStatus.RUNNING.value:
            # progress may only move backwards across a status change
            self._update(workflow_id, status=WorkflowStatus.PENDING.value)
        started_at = utcnow()
        workflow = self._update(
            workflow_id,
            status=WorkflowStatus.RUNNING.value,
            current_step=first.value,
            progress=STEP_PROGRESS[first],
            start_time=started_at,
            end_time=None,
            duration_ms=None,
            error_message=None,
        )
        logger.info("Workflow %s running from step %s", workflow_id, first.value)

        step = first
        try:
            for step in STEP_SEQUENCE[start_index:]:
                self._ensure_running(workflow_id)
                self._update(workflow_id, current_step=step.value, progress=STEP_PROGRESS[step])
                t0 = time.monotonic()
                result = self._handlers[step](workflow_id, outputs, workflow)
                elapsed_ms = int((time.monotonic() - t0) * 1000)
                self.data.save_step_result(
                    workflow_id, step.value, result, STEP_CONFIDENCE[step], elapsed_ms
                )
                outputs[step] = result
                self._mirror_result(workflow_id, step, result)
                logger.info("Workflow %s step %s finished in %d ms", workflow_id, step.value, elapsed_ms)
            self._ensure_running(workflow_id)
        except WorkflowInterruptedError as e:
            # the stored row is already terminal; leave it as it is
            logger.warning("Workflow %s stopped at step %s: %s", workflow_id, step.value, e)
            return {
                "workflow_id": workflow_id,
                "status": e.status,
                "failed_step": step.value,
                "error": str(e),
            }
        except Exception as e:
            logger.exception("Workflow %s failed at step %s", workflow_id, step.value)
            finished_at = utcnow()
            self._update(
                workflow_id,
                status=WorkflowStatus.FAILED.value,
                error_message=str(e) or e.__class__.__name__,
                end_time=finished_at,
                duration_ms=int((finished_at - started_at).total_seconds() * 1000),
            )
            return {
                "workflow_id": workflow_id,
                "status": WorkflowStatus.FAILED.value,
                "failed_step": step.value,
                "error": str(e) or e.__class__.__name__,
            }

        finished_at = utcnow()
        self._update(
            workflow_id,
            status=WorkflowStatus.COMPLETED.value,
            current_step=WorkflowStep.COMPLETED.value,
            progress=STEP_PROGRESS[WorkflowStep.COMPLETED],
            end_time=finished_at,
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        )
        logger.info("Workflow %s completed", workflow_id)
        return {
            "workflow_id": workflow_id,
            "status": WorkflowStatus.COMPLETED.value,
            "results": {s.value: outputs.get(s) for s in STEP_SEQUENCE},
        }

    def process_workflow(self, workflow_id: str) -> Dict[str, Any]:
        self.data.require_workflow(workflow_id, use_cache=False)
        return self._execute(workflow_id, 0, {})

    def process_rfp(
        self,
        documents: Iterable[DocumentSpec],
        project_context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        workflow_id = self.submit_workflow(documents, project_context, workflow_id)
        return self.process_workflow(workflow_id)

    def start_workflow_async(
        self,
        documents: Iterable[DocumentSpec],
        project_context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> str:
        """Submit a workflow and process it on a background thread. Returns its id."""
        workflow_id = self.submit_workflow(documents, project_context, workflow_id)
        thread = threading.Thread(
            target=self.process_workflow,
            args=(workflow_id,),
            name=f"workflow-{workflow_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[workflow_id] = thread
        thread.start()
        return workflow_id

    def join_workflow(self, workflow_id: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._threads.get(workflow_id)
        if thread is not None:
            thread.join(timeout)

    # --- recovery --------------------------------------------------------

    def resume_workflow(self, workflow_id: str, from_step: Union[str, WorkflowStep]) -> Dict[str, Any]:
        """
        Re-run ``from_step`` and every later step from persisted outputs of
        the earlier steps.
        """
        step = WorkflowStep(from_step)
        if step not in STEP_SEQUENCE:
            raise ValueError(f"Cannot resume from step '{step.value}'")
        self.data.require_workflow(workflow_id, use_cache=False)

        index = STEP_SEQUENCE.index(step)
        if index > 0:
            previous = STEP_SEQUENCE[index - 1]
            if self.data.get_latest_step_result(workflow_id, previous.value) is None:
                raise ResumePreconditionError(
                    f"Cannot resume {workflow_id} from {step.value}: no result for {previous.value}"
                )
        outputs = self._load_outputs(workflow_id, index)
        logger.info("Resuming workflow %s from %s", workflow_id, step.value)
        return self._execute(workflow_id, index, outputs)

    def retry_workflow(self, workflow_id: str, from_step: Union[str, WorkflowStep, None] = None) -> Dict[str, Any]:
        workflow = self.data.require_workflow(workflow_id, use_cache=False)
        if workflow["status"] == WorkflowStatus.RUNNING.value:
            updated_at = parse_timestamp(workflow["updated_at"])
            idle = utcnow() - updated_at if updated_at else timedelta(0)
            if self.is_workflow_active(workflow_id) or idle < timedelta(minutes=self.settings.retry_stuck_minutes):
                raise WorkflowBusyError(f"Workflow {workflow_id} is still running")
            logger.warning("Workflow %s stuck for %s; retrying", workflow_id, idle)

        if from_step is None:
            return self._execute(workflow_id, 0, {})
        return self.resume_workflow(workflow_id, from_step)

    def reprocess_answers(self, workflow_id: str) -> Dict[str, Any]:
        """Re-run answer extraction over the stored questions."""
        workflow = self.data.require_workflow(workflow_id, use_cache=False)
        questions = self.data.get_questions(workflow_id)
        if not questions:
            raise ResumePreconditionError(f"Workflow {workflow_id} has no stored questions")

        self._claim(workflow_id)
        try:
            t0 = time.monotonic()
            result = self.agents[WorkflowStep.ANSWER_EXTRACTION].run(
                workflow_id, questions, workflow.get("project_context")
            )
            self.data.save_answers(workflow_id, flatten_answers(result))
            self.data.save_step_result(
                workflow_id,
                WorkflowStep.ANSWER_EXTRACTION.value,
                result,
                STEP_CONFIDENCE[WorkflowStep.ANSWER_EXTRACTION],
                int((time.monotonic() - t0) * 1000),
            )
        finally:
            self._release(workflow_id)
        self._mirror_result(workflow_id, WorkflowStep.ANSWER_EXTRACTION, result)
        logger.info("Reprocessed answers for workflow %s", workflow_id)
        return result

    def repair_corrupted_workflows(self) -> List[Dict[str, Any]]:
        """Repair inconsistent stored workflows, skipping those executing here."""
        return repair_workflows(
            self.data,
            stale_minutes=self.settings.stale_workflow_minutes,
            on_repair=self.apply_repair,
            skip=self.is_workflow_active,
        )

    # --- queries ---------------------------------------------------------

    def get_workflow_status(self, workflow_id: str) -> Dict[str, Any]:
        with self._lock:
            state = self._states.get(workflow_id)
            workflow = dict(state["workflow"]) if state and "workflow" in state else None
        if workflow is None:
            workflow = self.data.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        results = self.data.get_latest_results(workflow_id)
        return {
            "workflow": workflow,
            "active": self.is_workflow_active(workflow_id),
            "documents": self.data.get_documents(workflow_id),
            "requirements": self.data.get_requirements(workflow_id),
            "questions": self.data.get_questions(workflow_id),
            "answers": self.data.get_answers(workflow_id),
            "results": {name: r["result_data"] for name, r in results.items()},
        }

    def list_workflows(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return self.data.list_workflows(limit=limit, offset=offset)

    def generate_workflow_summary(self, workflow_id: str) -> Dict[str, Any]:
        workflow = self.data.require_workflow(workflow_id)
        requirements = self.data.get_requirements(workflow_id)
        questions = self.data.get_questions(workflow_id)
        answers = self.data.get_answers(workflow_id)
        documents = self.data.get_documents(workflow_id)

        by_category: Dict[str, int] = {}
        for requirement in requirements:
            by_category[requirement["category"]] = by_category.get(requirement["category"], 0) + 1
        by_priority: Dict[str, int] = {}
        for question in questions:
            by_priority[question["priority"]] = by_priority.get(question["priority"], 0) + 1

        confidences = [a["confidence_score"] or 0.0 for a in answers]
        return {
            "workflow_id": workflow_id,
            "status": workflow["status"],
            "current_step": workflow["current_step"],
            "progress": workflow["progress"],
            "duration_ms": workflow["duration_ms"],
            "error_message": workflow["error_message"],
            "documents": {
                "total": len(documents),
                "processed": sum(1 for d in documents if d["processing_status"] == "completed"),
                "failed": sum(1 for d in documents if d["processing_status"] == "failed"),
            },
            "requirements": {"total": len(requirements), "by_category": by_category},
            "questions": {"total": len(questions), "by_priority": by_priority},
            "answers": {
                "total": len(answers),
                "answer_rate": len(answers) / len(questions) if questions else 0.0,
                "average_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
            },
        }

    # --- teardown --------------------------------------------------------

    def cleanup_old_workflows(self, max_age_hours: float = 24) -> int:
        """Evict finished workflows older than ``max_age_hours`` from memory."""
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        finished = {WorkflowStatus.COMPLETED.value, WorkflowStatus.FAILED.value}
        evicted = 0
        with self._lock:
            for workflow_id, state in list(self._states.items()):
                workflow = state.get("workflow") or {}
                if workflow_id in self._active or workflow.get("status") not in finished:
                    continue
                ended = parse_timestamp(workflow.get("end_time") or workflow.get("updated_at"))
                if ended is not None and ended < cutoff:
                    del self._states[workflow_id]
                    self._threads.pop(workflow_id, None)
                    evicted += 1
        if evicted:
            logger.info("Evicted %d finished workflow(s) from memory", evicted)
        return evicted

    def delete_workflow(self, workflow_id: str) -> bool:
        validate_workflow_id(workflow_id)
        if self.is_workflow_active(workflow_id):
            raise WorkflowBusyError(f"Workflow {workflow_id} is running and cannot be deleted")

        self.context.vector_store.delete_workflow(workflow_id)
        if self.context.graph_index.is_initialized:
            try:
                self.context.graph_index.delete_workflow_data(workflow_id)
            except Exception as e:
                logger.warning("Failed to delete graph data for %s: %s", workflow_id, e)
        deleted = self.data.delete_workflow(workflow_id)
        with self._lock:
            self._states.pop(workflow_id, None)
            self._threads.pop(workflow_id, None)
        logger.info("Deleted workflow %s", workflow_id)
        return deleted


__all__ = ["WorkflowEngine", "NO_DOCUMENTS_MESSAGE", "NO_QUESTIONS_MESSAGE"]
