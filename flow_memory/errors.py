"""Exception hierarchy for the memory system."""


class FlowMemoryError(Exception):
    """Base class for all memory system errors."""

    code = "error"


class ValidationError(FlowMemoryError, ValueError):
    """Raised when caller input is invalid."""

    code = "invalid_input"


class EmbeddingFailed(FlowMemoryError):
    """Raised when an embedding cannot be produced for a piece of text.

    Callers treat this as non-fatal: the entity is stored without a vector.
    """

    code = "embedding_failed"


class TeamDisabled(FlowMemoryError):
    """Raised when a team operation is attempted without team configuration."""

    code = "team_disabled"


class Forbidden(FlowMemoryError):
    """Raised when the caller is not a member (or not an admin) of a team."""

    code = "forbidden"


class NotFound(FlowMemoryError):
    """Raised when a proposal, fact or other entity does not exist."""

    code = "not_found"


class ProposalClosed(FlowMemoryError):
    """Raised when voting on a proposal that is no longer pending."""

    code = "proposal_closed"


class InvalidState(FlowMemoryError):
    """Raised when deciding a proposal that has already been decided."""

    code = "invalid_state"


class ChunkingError(FlowMemoryError):
    """Raised when a document cannot be split into chunks."""

    code = "chunking_failed"


class RemoteError(FlowMemoryError):
    """Raised when the remote knowledge service cannot be reached or fails."""

    code = "remote_error"

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def error_result(error: FlowMemoryError) -> dict:
    """Convert an error into the structured result returned by tool calls."""
    return {"success": False, "error": str(error), "code": error.code}
