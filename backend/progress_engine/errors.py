"""Error taxonomy shared by services, the ledger and the HTTP layer."""


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class OwnershipViolation(EngineError):
    """The caller does not own the item or account it addressed."""


class NotFound(EngineError):
    """The addressed item or account does not exist."""


class ValidationError(EngineError, ValueError):
    """Input rejected before any state was touched."""


class LedgerContention(EngineError):
    """The ledger transaction could not be serialized within the retry budget."""

    def __init__(self, user_id: int, attempts: int):
        super().__init__(f"ledger contention for user {user_id} after {attempts} attempts")
        self.user_id = user_id
        self.attempts = attempts


class StoreUnavailable(EngineError):
    """The persistent store failed for a reason other than a write conflict."""


class DuplicateUsername(EngineError):
    """The username is already registered."""
