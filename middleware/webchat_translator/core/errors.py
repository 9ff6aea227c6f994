"""Error taxonomy shared by the browser, policy and pipeline layers."""

from __future__ import annotations

from typing import Any, List, Optional


class TranslatorError(RuntimeError):
    error_type = "translator_error"

    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        unit_index: int | None = None,
        results: Optional[List[Any]] = None,
    ) -> None:
        super().__init__(message)
        if error_type:
            self.error_type = error_type
        self.unit_index = unit_index
        self.results = results if results is not None else []


class OwnershipDenied(TranslatorError):
    error_type = "ownership_denied"


class ProcessLaunchFailure(TranslatorError):
    error_type = "launch_failed"


class LifecycleError(TranslatorError):
    """Raised when install or reset cannot complete."""

    error_type = "lifecycle_error"


class UploadFailure(TranslatorError):
    error_type = "upload_failed"


class SendFailure(TranslatorError):
    error_type = "send_failed"


class GenerationError(TranslatorError):
    """Model-side refusal or failure surfaced through the chat interface."""

    error_type = "generation_error"


class TurnTimeout(TranslatorError):
    error_type = "timeout"


class CancellationRequested(TranslatorError):
    """Raised when an external stop request ends the run at a safe point."""

    error_type = "cancelled"
