"""SQLAlchemy models and per-workflow SQLite partitions."""

from __future__ import annotations

import logging
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Engine, Float, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .exceptions import WorkflowNotFoundError
from .models import validate_workflow_id


logger = logging.getLogger(__name__)

DB_FILENAME = "workflow.db"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Workflow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    current_step: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    project_context: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workflow_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflows.id", ondelete="CASCADE"), index=True
    )
    original_name: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    document_type: Mapped[str] = mapped_column(String, default="rfp")
    processing_status: Mapped[str] = mapped_column(
        String, default="pending"
    )  # pending | processing | completed | failed
    processed_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    doc_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    structured_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Requirement(Base):
    __tablename__ = "requirements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflows.id", ondelete="CASCADE"), index=True
    )
    requirement_id: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String, default="medium")
    complexity: Mapped[str] = mapped_column(String, default="medium")
    mandatory: Mapped[bool] = mapped_column(Boolean, default=False)
    source_document_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflows.id", ondelete="CASCADE"), index=True
    )
    question_id: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String, default="medium")
    impact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_requirements: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Answer(Base):
    __tablename__ = "answers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflows.id", ondelete="CASCADE"), index=True
    )
    question_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    answer_type: Mapped[str] = mapped_column(String, default="direct")
    completeness: Mapped[str] = mapped_column(String, default="complete")
    sources: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WorkflowResult(Base):
    """Append-only step output; the newest row per step name wins."""

    __tablename__ = "workflow_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflows.id", ondelete="CASCADE"), index=True
    )
    step_name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    result_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WorkflowDatabaseManager:
    """
    One SQLite database per workflow at ``<root>/<workflow_id>/workflow.db``.

    Engines and session factories are created lazily and cached; the schema
    is created on first use of a partition.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._factories: Dict[str, sessionmaker] = {}
        self._engines: Dict[str, Engine] = {}
        self._guard = threading.Lock()

    def db_path(self, workflow_id: str) -> Path:
        return self.root / validate_workflow_id(workflow_id) / DB_FILENAME

    def exists(self, workflow_id: str) -> bool:
        return self.db_path(workflow_id).exists()

    def _factory(self, workflow_id: str, create: bool) -> sessionmaker:
        with self._guard:
            factory = self._factories.get(workflow_id)
            if factory is not None:
                return factory

            path = self.db_path(workflow_id)
            if not path.exists():
                if not create:
                    raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
                path.parent.mkdir(parents=True, exist_ok=True)

            engine = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            Base.metadata.create_all(engine)
            factory = sessionmaker(bind=engine, expire_on_commit=False)
            self._engines[workflow_id] = engine
            self._factories[workflow_id] = factory
            logger.debug("Opened workflow database %s", path)
            return factory

    @contextmanager
    def session(self, workflow_id: str, create: bool = False) -> Iterator[Session]:
        """
        Transactional session on one workflow partition: commits on success,
        rolls back and re-raises on error.
        """
        factory = self._factory(workflow_id, create)
        with factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def list_workflow_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.name for p in self.root.iterdir() if p.is_dir() and (p / DB_FILENAME).exists()
        )

    def _dispose(self, workflow_id: str) -> None:
        engine = self._engines.pop(workflow_id, None)
        self._factories.pop(workflow_id, None)
        if engine is not None:
            engine.dispose()

    def delete(self, workflow_id: str) -> bool:
        folder = self.db_path(workflow_id).parent
        with self._guard:
            self._dispose(workflow_id)
        if not folder.exists():
            return False
        shutil.rmtree(folder)
        logger.info("Deleted workflow database folder %s", folder)
        return True

    def dispose_all(self) -> None:
        with self._guard:
            for workflow_id in list(self._engines):
                self._dispose(workflow_id)


__all__ = [
    "Base",
    "Workflow",
    "Document",
    "Requirement",
    "Question",
    "Answer",
    "WorkflowResult",
    "WorkflowDatabaseManager",
    "utcnow",
]
