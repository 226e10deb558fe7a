"""
Exception hierarchy for the beacon analyzer.
"""


class AnalysisError(Exception):
    """Base class for all analyzer errors."""


class InputError(AnalysisError, ValueError):
    """Raised when the submitted data cannot be analyzed."""


class InvalidDocumentError(InputError):
    """Raised when no connection list can be located in a document."""


class InsufficientDataError(InputError):
    """Raised when fewer connections than required are available."""

    def __init__(self, found: int, required: int = 2):
        self.found = found
        self.required = required
        super().__init__(
            f"Insufficient data: need at least {required} connections, found {found}"
        )


class MissingFieldError(InputError):
    """Raised when a required field is absent from the sampled records."""

    def __init__(self, field: str, aliases=(), sample_size: int = 0):
        self.field = field
        self.aliases = tuple(aliases)
        self.sample_size = sample_size
        accepted = ", ".join(self.aliases) if self.aliases else field
        super().__init__(
            f"No {field} field found in the first {sample_size} connections. "
            f"Accepted fields: {accepted}"
        )


class RuleValidationError(InputError):
    """Raised when a custom IOC rule is malformed."""


class FeedUnavailableError(AnalysisError):
    """Raised by a threat intelligence feed that cannot answer a query."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")
