"""Error taxonomy shared by the lifecycle, rule engine and reconciler."""

import uuid


class StreakboardError(Exception):
    """Base class for engine errors."""


class ValidationError(StreakboardError):
    """A request violated the session state machine. Never retried."""


class AlreadyActive(ValidationError):
    def __init__(self, user_id: uuid.UUID):
        super().__init__(f"User {user_id} already has an active session")
        self.user_id = user_id


class NoActiveSession(ValidationError):
    def __init__(self, user_id: uuid.UUID):
        super().__init__(f"User {user_id} has no active session")
        self.user_id = user_id


class OperationInProgress(ValidationError):
    def __init__(self, user_id: uuid.UUID):
        super().__init__(f"A start/stop for user {user_id} is already in flight")
        self.user_id = user_id


class PersistenceError(StreakboardError):
    """The store was unreachable or rejected a write. Local state is untouched."""


class ReconciliationGapError(StreakboardError):
    """The change feed dropped; the snapshot must be re-fetched."""


class RuleEvaluationError(StreakboardError):
    """Achievement evaluation failed for one pass (e.g. malformed catalog)."""
