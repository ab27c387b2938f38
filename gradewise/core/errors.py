"""Error taxonomy shared across services.

Only ConfigurationError is expected to reach callers. Transient integration
failures and inconsistent data are recovered close to where they happen, and
a user cancelling a turn is a terminal state rather than an exception.
"""


class GradewiseError(Exception):
    """Base class for all application errors."""


class ConfigurationError(GradewiseError, ValueError):
    """A required identifier or setting is missing. Fails fast."""


class TransientIntegrationError(GradewiseError):
    """An embedding, generation or store call failed over the network.

    Attributes:
        service: Name of the collaborator that failed (e.g. "embedding")
    """

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} unavailable: {message}")
        self.service = service


class DataInconsistencyError(GradewiseError):
    """A stored aggregate or grade carried a value we could not interpret."""


class TransactionConflictError(GradewiseError):
    """Optimistic aggregate transaction kept conflicting after all retries."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Transaction on '{key}' still conflicting after {attempts} attempts")
        self.key = key
        self.attempts = attempts


class NotFoundError(GradewiseError, LookupError):
    """Referenced grade, conversation or lesson plan does not exist."""


class AccessDeniedError(GradewiseError, PermissionError):
    """The tenant does not own the referenced class."""
