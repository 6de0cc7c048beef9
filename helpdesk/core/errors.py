from __future__ import annotations


class HelpdeskError(Exception):
    """Base error for the helpdesk core."""


class ProviderConfigError(HelpdeskError):
    """Missing or invalid provider configuration."""


class LLMError(HelpdeskError):
    """LLM provider request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PromptTooLongError(LLMError):
    """Provider rejected the prompt for exceeding the context window."""

    def __init__(self, message: str, *, actual: int, maximum: int) -> None:
        super().__init__(message, status_code=400)
        self.actual = actual
        self.maximum = maximum


class RetrievalError(HelpdeskError):
    """Retrieval layer failure."""


class DatabaseError(HelpdeskError):
    """Database layer failure."""


class NotFoundError(HelpdeskError):
    """Referenced record is missing."""


class MetadataAPIError(HelpdeskError):
    """Tenant metadata endpoint returned an unusable response."""


class ToolApiError(HelpdeskError):
    """Tenant HTTP tool could not be invoked."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class WorkflowDefinitionError(HelpdeskError):
    """Workflow definition is invalid for the requested action."""
