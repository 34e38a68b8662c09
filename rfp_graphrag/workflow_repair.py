from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .data_service import WorkflowDataService, parse_timestamp
from .database import utcnow
from .models import WorkflowStatus, WorkflowStep, clamp_progress

if TYPE_CHECKING:
    from .workflow_engine import WorkflowEngine


logger = logging.getLogger(__name__)

REPAIR_MESSAGE = "Workflow was in an inconsistent state and has been marked as failed"


def detect_issues(
    workflow: Dict[str, Any],
    now: datetime,
    stale_minutes: float = 10.0,
) -> Tuple[List[str], Dict[str, Any]]:
    """
    Inspect one workflow row. Returns the issues found and the field updates
    that repair them (both empty for a consistent workflow).
    """
    issues: List[str] = []
    updates: Dict[str, Any] = {}

    progress = workflow.get("progress")
    if progress is None or not 0 <= progress <= 100:
        issues.append(f"progress out of range: {progress}")
        updates["progress"] = clamp_progress(progress)

    if workflow.get("status") == WorkflowStatus.RUNNING.value:
        inconsistent = []
        if workflow.get("current_step") == WorkflowStep.FAILED.value:
            inconsistent.append("running with failed step")
        if workflow.get("end_time"):
            inconsistent.append("running with end time")
        if workflow.get("error_message"):
            inconsistent.append("running with error message")
        updated_at = parse_timestamp(workflow.get("updated_at"))
        if updated_at is not None and now - updated_at > timedelta(minutes=stale_minutes):
            inconsistent.append(f"no progress since {workflow['updated_at']}")

        if inconsistent:
            issues.extend(inconsistent)
            updates["status"] = WorkflowStatus.FAILED.value
            updates["error_message"] = workflow.get("error_message") or REPAIR_MESSAGE
            updates["end_time"] = parse_timestamp(workflow.get("end_time")) or now

    return issues, updates


def repair_workflows(
    data: WorkflowDataService,
    stale_minutes: float = 10.0,
    on_repair: Optional[Callable[[Dict[str, Any]], None]] = None,
    skip: Optional[Callable[[str], bool]] = None,
) -> List[Dict[str, Any]]:
    """
    Sweep every stored workflow and persist repairs for inconsistent ones.

    ``on_repair`` receives each repaired workflow row (used to mirror repairs
    into in-memory state). Workflows for which ``skip`` returns True are
    left untouched; the engine passes its set of executing workflows.
    """
    now = utcnow()
    repaired: List[Dict[str, Any]] = []
    for workflow_id in data.list_workflow_ids():
        if skip is not None and skip(workflow_id):
            logger.debug("Skipping repair of active workflow %s", workflow_id)
            continue
        workflow = data.get_workflow(workflow_id, use_cache=False)
        if workflow is None:
            continue
        issues, updates = detect_issues(workflow, now, stale_minutes)
        if not updates:
            continue
        logger.warning("Repairing workflow %s: %s", workflow_id, "; ".join(issues))
        fixed = data.update_workflow(workflow_id, **updates)
        if on_repair is not None:
            on_repair(fixed)
        repaired.append({"workflow_id": workflow_id, "issues": issues, "workflow": fixed})

    if repaired:
        logger.info("Repaired %d workflow(s)", len(repaired))
    return repaired


class RepairSweeper:
    """Runs the repair sweep every ``interval_seconds`` on a daemon thread."""

    def __init__(self, engine: "WorkflowEngine", interval_seconds: float = 300.0):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> List[Dict[str, Any]]:
        return self.engine.repair_corrupted_workflows()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Workflow repair sweep failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="workflow-repair", daemon=True)
        self._thread.start()
        logger.info("Workflow repair sweeper started (interval=%.0fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["REPAIR_MESSAGE", "RepairSweeper", "detect_issues", "repair_workflows"]
