"""Error taxonomy for the issue extraction and aggregation pipeline.

Only ``AuthFailure`` and ``ParseFailure`` fail a refresh cycle; everything
else is contained inside the cycle and logged.
"""


class NexoError(Exception):
    """Base class for pipeline errors."""


class AuthFailure(NexoError):
    """Caller is not authenticated."""


class ParseFailure(NexoError):
    """Model response held no usable JSON object, or the object failed validation."""

    def __init__(self, message: str, response_text: str = ""):
        super().__init__(message)
        self.response_text = response_text


class MatchAmbiguity(NexoError):
    """Matching response was malformed or pointed outside the candidate list."""


class PersistenceConflict(NexoError):
    """A write collided with a concurrent writer."""


class CanonicalIssueConflict(PersistenceConflict):
    """Unique-name violation while creating a canonical issue."""

    def __init__(self, name: str):
        super().__init__(f"Canonical issue already exists: {name}")
        self.name = name


class StaleAggregateError(PersistenceConflict):
    """Compare-and-swap on an aggregate row kept losing to concurrent writers."""


class PartialPersistenceFailure(NexoError):
    """One issue's contribution could not be persisted; the cycle continues."""


class NonFatalEnhancementFailure(NexoError):
    """Optional enrichment (reflection prompt) failed."""
