"""
Error taxonomy for chatline.

Two families, both recoverable at the boundary that detects them:
  - FormatError: persisted chat data or message text cannot be represented
  - ProtocolError: a chat completion request body is unusable

File system failures are plain OSError and are never wrapped.
"""

from __future__ import annotations


class ChatlineError(Exception):
    """Base class for every error raised by chatline itself."""


# ---------------------------------------------------------------------------
# Format errors
# ---------------------------------------------------------------------------

class FormatError(ChatlineError, ValueError):
    """Conversation data is malformed."""

    code = "invalid_format"


class InvalidFormat(FormatError):
    """Persisted chat JSON is not an array of {role, content} objects."""


class InvalidRole(FormatError):
    """A role token is not one of system, user, assistant."""

    code = "invalid_role"

    def __init__(self, role):
        self.role = role
        super().__init__(f"Invalid role: {role!r}")


class NulByteInString(FormatError):
    """Text contains an embedded NUL and cannot cross the engine boundary."""

    code = "nul_byte_in_string"

    def __init__(self, message: str = "String contains an embedded NUL byte"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Protocol errors
# ---------------------------------------------------------------------------

class ProtocolError(ChatlineError, ValueError):
    """A chat completion request could not be decoded."""

    code = "invalid_request"

    def __init__(self, message: str, param: str | None = None):
        self.param = param
        super().__init__(message)


class InvalidJson(ProtocolError):
    """Request body is not valid JSON or does not match the schema."""

    code = "invalid_json"


class MissingMessages(ProtocolError):
    """Request carries an empty messages array."""

    code = "missing_messages"

    def __init__(self, message: str = "'messages' must contain at least one message"):
        super().__init__(message, param="messages")
