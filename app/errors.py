class ChatError(Exception):
    """Base class for errors raised by the chat and knowledge services"""


class EmptyInputError(ChatError, ValueError):
    """Blank text, query or message"""


class InvalidDocumentError(ChatError, ValueError):
    """An uploaded document could not be read"""


class DimensionMismatchError(ChatError, ValueError):
    """Two vectors of different length were compared"""


class NotFoundError(ChatError, LookupError):
    """Conversation or student is absent, or not owned by the caller"""


class ProviderUnavailableError(ChatError):
    """The embedding or completion provider failed or is not configured"""


class RateLimitedError(ChatError):
    """Too many completion requests inside the rate limit window"""


class InvalidIdError(ChatError, ValueError):
    """A course id in a request is not a valid ObjectId"""
