"""
Error taxonomy for the conversational ledger assistant.

None of these are fatal to the process: the orchestrator turns every one of
them into a reply for the tenant.
"""


class LedgerBotError(Exception):
    """Base class for all assistant errors."""


class GenerationFailed(LedgerBotError):
    """The inference collaborator returned an error, nothing, or unparseable output."""


class DigitizationFailed(GenerationFailed):
    """The photo could not be turned into at least one ledger row."""


class ValidationRejected(LedgerBotError):
    """A generated query did not pass the safety gate. Expected, not a bug."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class QueryExecutionFailed(LedgerBotError):
    """The storage layer failed while running a validated query."""


class StorageUnavailable(LedgerBotError):
    """A pending-extraction read or write failed."""
