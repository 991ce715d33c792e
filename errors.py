from __future__ import annotations

from typing import Optional


class CopilotError(Exception):
    """Base exception for the copilot service."""


class InputError(CopilotError):
    """Missing or empty request input (question, content, file)."""


class ModelError(CopilotError):
    pass


class SafetyRejection(CopilotError):
    pass


class ExecutionError(CopilotError):
    pass


class BackendError(CopilotError):
    """A single store failed; the router decides whether to fall back."""


class BackendUnavailable(CopilotError):
    """Both the primary and the embedded store failed for one operation."""


class IngestError(CopilotError):
    def __init__(self, message: str, *, dataset_id: Optional[str] = None, rows_loaded: int = 0):
        super().__init__(message)
        self.dataset_id = dataset_id
        self.rows_loaded = rows_loaded
