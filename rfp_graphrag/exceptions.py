"""Exception types shared across the package."""


class RfpGraphRagError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(RfpGraphRagError):
    """Invalid or missing configuration. Fatal, never retried."""


class EmbeddingDimensionError(ConfigurationError):
    """The embedding model produced vectors of an unexpected length."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class CollaboratorError(RfpGraphRagError):
    """A transient failure of an external service (LLM, network, database)."""


class ExtractionError(RfpGraphRagError):
    """Text could not be extracted from an uploaded file."""


class UnsupportedFormatError(ExtractionError):
    """The uploaded file type has no text extractor."""


class WorkflowNotFoundError(RfpGraphRagError):
    pass


class WorkflowBusyError(RfpGraphRagError):
    """The workflow is still actively running and cannot be retried."""


class ResumePreconditionError(RfpGraphRagError):
    """The step preceding the requested resume point has no stored result."""


class WorkflowStepError(RfpGraphRagError):
    """A pipeline step produced no usable output where output is required."""

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step


class WorkflowInterruptedError(RfpGraphRagError):
    """The stored workflow left the running state while this process was executing it."""

    def __init__(self, workflow_id: str, status: str):
        super().__init__(f"Workflow {workflow_id} is no longer running (status={status})")
        self.workflow_id = workflow_id
        self.status = status


__all__ = [
    "RfpGraphRagError",
    "ConfigurationError",
    "EmbeddingDimensionError",
    "CollaboratorError",
    "ExtractionError",
    "UnsupportedFormatError",
    "WorkflowNotFoundError",
    "WorkflowBusyError",
    "ResumePreconditionError",
    "WorkflowStepError",
    "WorkflowInterruptedError",
]
