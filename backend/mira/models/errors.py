"""Domain exceptions raised across the conversation layer."""


class MiraError(Exception):
    """Base class for application errors."""


class DialogueStateError(MiraError):
    """Raised when a dialogue transition would violate the state machine."""


class UnexpectedReplyError(DialogueStateError):
    """Raised when a structured reply does not match the open step."""


class PersistenceError(MiraError):
    """Raised when a message could not be saved even with a minimal payload."""


class ServiceError(MiraError):
    """Raised when an external collaborator returns an unusable response."""
