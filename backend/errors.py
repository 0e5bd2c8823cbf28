"""Exception hierarchy shared by the ingestion and retrieval services."""


class RetrievalServiceError(Exception):
    """Base class for all service errors."""


class ConfigurationError(RetrievalServiceError, ValueError):
    """Missing credentials or inconsistent settings. Raised at construction time."""


class ProviderError(RetrievalServiceError, RuntimeError):
    """An embedding, store, or source call failed.

    ``transient`` marks failures worth retrying (timeouts, network errors,
    model-loading 503s). Callers retry only those.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class ValidationError(RetrievalServiceError, ValueError):
    """A malformed record or a vector of the wrong length."""
