"""
Conversation store: the data model for multi-turn dialogue.

A Conversation is an ordered list of role-tagged messages. The only structural
rule is the system prompt: when set through set_or_prepend_system_prompt(),
there is exactly one system message and it sits at index 0. Plain append()
does not police this; callers that want the invariant go through the
dedicated method.

Message text is validated on construction so that it can always be handed to
an engine that consumes NUL-terminated strings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator

from chatline.errors import InvalidFormat, InvalidRole, NulByteInString

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


_ROLE_NAMES = {
    Role.SYSTEM: "system",
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
}
_ROLES_BY_NAME = {name: role for role, name in _ROLE_NAMES.items()}


def role_to_string(role: Role) -> str:
    return _ROLE_NAMES[role]


def role_from_string(token: str) -> Role:
    """Parse a role token. Exact, case-sensitive match only."""
    if not isinstance(token, str):
        raise InvalidRole(token)
    try:
        return _ROLES_BY_NAME[token]
    except KeyError:
        raise InvalidRole(token) from None


def dupe_z(text: str) -> str:
    """
    Return an owned copy of text that is safe to NUL-terminate.

    Raises NulByteInString if the text already contains a NUL character.
    """
    if not isinstance(text, str):
        raise InvalidFormat(f"Message content must be a string, got {type(text).__name__}")
    if "\x00" in text:
        raise NulByteInString()
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        # lone surrogates, e.g. from a "\ud800" JSON escape
        raise InvalidFormat(f"Message content is not valid UTF-8 text: {e.reason}") from e
    # str is immutable, so the copy is the object itself
    return text


@dataclass(frozen=True)
class Message:
    """A single turn. Content never contains a NUL character."""

    role: Role
    content: str

    def __post_init__(self):
        role = self.role if isinstance(self.role, Role) else role_from_string(self.role)
        object.__setattr__(self, "role", role)
        object.__setattr__(self, "content", dupe_z(self.content))

    def to_dict(self) -> dict:
        return {"role": role_to_string(self.role), "content": self.content}


class Conversation:
    """Ordered dialogue history, exclusively owned by one session."""

    def __init__(self, messages: Iterable[Message] | None = None):
        self._messages: list[Message] = list(messages) if messages else []

    # -- sequence protocol --------------------------------------------------

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, Conversation):
            return NotImplemented
        return self._messages == other._messages

    def __repr__(self) -> str:
        return f"<Conversation messages={len(self._messages)} system={self.has_system_prompt}>"

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def has_system_prompt(self) -> bool:
        return bool(self._messages) and self._messages[0].role is Role.SYSTEM

    @property
    def system_prompt(self) -> str | None:
        """Content of the leading system message, if any."""
        return self._messages[0].content if self.has_system_prompt else None

    # -- mutation -----------------------------------------------------------

    def append(self, message: Message) -> None:
        """
        Add a message at the end.

        A second system message is accepted here; the single-system-prompt
        rule is only applied by set_or_prepend_system_prompt().
        """
        if not isinstance(message, Message):
            raise TypeError(f"expected Message, got {type(message).__name__}")
        self._messages.append(message)

    def add(self, role: Role | str, content: str) -> Message:
        """Build a message from raw parts and append it."""
        message = Message(role, content)
        self.append(message)
        return message

    def set_or_prepend_system_prompt(self, text: str) -> None:
        """Replace the leading system prompt, or insert one at index 0."""
        message = Message(Role.SYSTEM, text)
        if self.has_system_prompt:
            self._messages[0] = message
        else:
            self._messages.insert(0, message)

    def clear_keep_system(self) -> None:
        """Drop every message except a leading system prompt."""
        keep = 1 if self.has_system_prompt else 0
        dropped = len(self._messages) - keep
        if dropped:
            del self._messages[keep:]
            logger.debug("Cleared %d message(s), kept system prompt: %s", dropped, bool(keep))

    def pop(self, index: int = -1) -> Message:
        return self._messages.pop(index)

    def drop_oldest_non_system(self) -> bool:
        """Remove the oldest message that is not the leading system prompt."""
        start = 1 if self.has_system_prompt else 0
        if len(self._messages) <= start:
            return False
        del self._messages[start]
        return True

    # -- conversion ---------------------------------------------------------

    def copy(self) -> "Conversation":
        # Messages are immutable, a shallow copy never shares mutable state
        return Conversation(self._messages)

    def to_list(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_list(cls, items: Iterable[dict]) -> "Conversation":
        """
        Build a conversation from [{"role": ..., "content": ...}, ...].

        Extra keys on an item are ignored. Any failure discards everything
        built so far; no partial conversation is returned.
        """
        messages = []
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                raise InvalidFormat(f"Message #{i} is not an object")
            if "role" not in item or "content" not in item:
                raise InvalidFormat(f"Message #{i} needs both 'role' and 'content'")
            if not isinstance(item["role"], str):
                raise InvalidFormat(f"Message #{i} has a non-string role")
            messages.append(Message(role_from_string(item["role"]), item["content"]))
        return cls(messages)
