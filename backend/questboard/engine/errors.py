"""
Error taxonomy for the quest engine.

Every error carries a short machine-readable ``code`` so the API layer can
map it to a status code without inspecting messages.
"""


class QuestEngineError(Exception):
    """Base class for all user-actionable engine errors."""
    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuestEngineError):
    """Malformed input: non-positive amount, missing role or field."""
    code = "validation_error"


class OvercommitError(QuestEngineError):
    """Contribution would exceed the remaining need of a requirement."""
    code = "overcommit"


class InvalidStateError(QuestEngineError):
    """Quest is not active, or the stage has no requirement for the action."""
    code = "invalid_state"


class QuotaExceededError(QuestEngineError):
    """Serialized record exceeds the storage budget."""
    code = "quota_exceeded"


class NotFoundError(QuestEngineError):
    """Quest, stage or user is unknown."""
    code = "not_found"


class PermissionDeniedError(QuestEngineError):
    """Caller lacks the curator/moderator flag for the action."""
    code = "permission_denied"


class ConcurrentUpdateError(QuestEngineError):
    """Stored quest changed since it was read (lost compare-and-swap)."""
    code = "concurrent_update"
