"""Exception hierarchy for the research core."""
from __future__ import annotations


class ResearchError(Exception):
    """Base class for every error raised by the research core."""


class ConfigurationError(ResearchError, ValueError):
    """Invalid session configuration or missing service credentials.

    Raised synchronously, before any session state exists.
    """


class TemplateBindingError(ResearchError, KeyError):
    """A query template references a variable the binding does not provide."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "template binding failed"


class ProviderError(ResearchError):
    """The research provider rejected or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """The research provider rejected our credentials (HTTP 401)."""


class ExtractionError(ResearchError):
    """The completion service returned output the extractor cannot use."""
