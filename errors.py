"""
Error taxonomy for Swapskill

Remote failures come back from the document store (pymongo errors or
anything the store raises), precondition failures are raised before any
remote call, and not-found conditions on cached data are silent no-ops.
"""
import logging

from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)


class SwapskillError(Exception):
    """Base class for domain errors"""


class PreconditionError(SwapskillError, ValueError):
    """Rejected before any remote call (missing reason, empty content...)"""


class InvalidInputError(PreconditionError):
    """The caller's own arguments were rejected; always reaches the caller"""


class NotFoundError(SwapskillError, LookupError):
    """A document the operation depends on does not exist"""


class NotAuthenticatedError(SwapskillError):
    """The action needs a signed-in user"""


class PermissionDeniedError(SwapskillError):
    """The signed-in user lacks the role the action needs"""


def describe_error(error, fallback="An unexpected error occurred."):
    """Turn an exception into the single human-readable message the store keeps"""
    if isinstance(error, SwapskillError):
        return str(error) or fallback
    if isinstance(error, ConnectionFailure):
        logger.warning(f"Database connection error: {error}")
        return "Database connection error. Please try again in a moment."
    if isinstance(error, OperationFailure):
        logger.warning(f"Database operation rejected: {error}")
        if error.code == 13:
            return "You don't have permission to perform this action."
        return fallback
    if isinstance(error, PyMongoError):
        return f"Database error occurred. {fallback}"
    message = str(error)
    return message or fallback
