"""
Tests for the conversation store.
Run with: pytest tests/test_conversation.py
"""

import pytest

from chatline.conversation import (
    Conversation,
    Message,
    Role,
    dupe_z,
    role_from_string,
    role_to_string,
)
from chatline.errors import FormatError, InvalidFormat, InvalidRole, NulByteInString


def _convo(*pairs) -> Conversation:
    c = Conversation()
    for role, content in pairs:
        c.add(role, content)
    return c


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

def test_role_round_trip():
    """role_to_string and role_from_string are inverses."""
    for role in Role:
        assert role_from_string(role_to_string(role)) is role


def test_role_from_string_rejects_unknown():
    """Role tokens are exact and case-sensitive."""
    for token in ("tool", "System", "", " user", "bot"):
        with pytest.raises(InvalidRole):
            role_from_string(token)


def test_invalid_role_is_a_format_error():
    with pytest.raises(FormatError):
        role_from_string("wizard")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_dupe_z_copies_text():
    """Ordinary text passes through unchanged."""
    assert dupe_z("héllo") == "héllo"
    assert dupe_z("") == ""


def test_dupe_z_rejects_nul():
    """Embedded NUL characters are refused."""
    with pytest.raises(NulByteInString):
        dupe_z("a\x00b")


def test_dupe_z_rejects_lone_surrogate():
    """Text that cannot be encoded as UTF-8 is a format error."""
    with pytest.raises(InvalidFormat):
        dupe_z("a\ud800b")


def test_message_rejects_nul_content():
    """A message can never hold an embedded NUL."""
    with pytest.raises(NulByteInString):
        Message(Role.USER, "a\u0000b")


def test_message_rejects_non_string_content():
    """Content must be a string."""
    with pytest.raises(InvalidFormat):
        Message(Role.USER, 42)


def test_message_accepts_role_string():
    """A role token is coerced to Role."""
    msg = Message("assistant", "hi")
    assert msg.role is Role.ASSISTANT
    assert msg.to_dict() == {"role": "assistant", "content": "hi"}


def test_message_is_immutable():
    msg = Message(Role.USER, "hi")
    with pytest.raises(AttributeError):
        msg.content = "changed"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

def test_append_keeps_order():
    """Messages stay in insertion order."""
    c = _convo(("user", "one"), ("assistant", "two"), ("user", "three"))
    assert [m.content for m in c] == ["one", "two", "three"]
    assert len(c) == 3


def test_append_allows_second_system_message():
    """append() does not enforce the single-system-prompt rule."""
    c = Conversation()
    c.set_or_prepend_system_prompt("first")
    c.append(Message(Role.SYSTEM, "second"))
    assert [m.role for m in c] == [Role.SYSTEM, Role.SYSTEM]


def test_append_rejects_non_message():
    """Only Message objects can be appended."""
    with pytest.raises(TypeError):
        Conversation().append({"role": "user", "content": "hi"})


def test_set_system_prompt_prepends():
    """A new system prompt is inserted at index 0."""
    c = _convo(("user", "hi"), ("assistant", "hello"))
    c.set_or_prepend_system_prompt("be brief")
    assert c[0] == Message(Role.SYSTEM, "be brief")
    assert [m.content for m in c][1:] == ["hi", "hello"]


def test_set_system_prompt_replaces():
    """An existing system prompt is replaced in place."""
    c = _convo(("system", "old"), ("user", "hi"))
    c.set_or_prepend_system_prompt("new")
    assert len(c) == 2
    assert c.system_prompt == "new"


def test_set_system_prompt_on_empty():
    c = Conversation()
    c.set_or_prepend_system_prompt("sys")
    assert len(c) == 1
    assert c.has_system_prompt


def test_repeated_system_prompts_leave_one_at_front():
    """Setting the prompt many times leaves exactly one at the front."""
    c = _convo(("user", "a"), ("assistant", "b"))
    for text in ("one", "two", "three"):
        c.set_or_prepend_system_prompt(text)
        systems = [i for i, m in enumerate(c) if m.role is Role.SYSTEM]
        assert systems == [0]
    assert c.system_prompt == "three"


def test_set_system_prompt_rejects_nul_and_keeps_old():
    """A rejected prompt leaves the old one in place."""
    c = _convo(("system", "old"))
    with pytest.raises(NulByteInString):
        c.set_or_prepend_system_prompt("bad\x00")
    assert c.system_prompt == "old"


def test_clear_keep_system():
    """Clearing keeps only the leading system prompt."""
    c = _convo(("system", "sys"), ("user", "a"), ("assistant", "b"))
    c.clear_keep_system()
    assert c.to_list() == [{"role": "system", "content": "sys"}]


def test_clear_without_system_empties():
    c = _convo(("user", "a"), ("assistant", "b"))
    c.clear_keep_system()
    assert len(c) == 0


def test_clear_is_noop_when_minimal():
    """Clearing a minimal conversation changes nothing."""
    c = _convo(("system", "sys"))
    c.clear_keep_system()
    c.clear_keep_system()
    assert len(c) == 1

    empty = Conversation()
    empty.clear_keep_system()
    assert len(empty) == 0


def test_system_message_not_at_front_is_not_the_prompt():
    """Only index 0 counts as the system prompt."""
    c = _convo(("user", "a"), ("system", "late"))
    assert not c.has_system_prompt
    assert c.system_prompt is None


def test_copy_is_independent():
    """Mutating a copy leaves the original alone."""
    c = _convo(("user", "a"))
    dup = c.copy()
    dup.add("assistant", "b")
    assert len(c) == 1
    assert len(dup) == 2


def test_equality():
    assert _convo(("user", "a")) == _convo(("user", "a"))
    assert _convo(("user", "a")) != _convo(("assistant", "a"))


def test_from_list_round_trip():
    items = [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert Conversation.from_list(items).to_list() == items


def test_from_list_ignores_extra_keys():
    """Unknown keys on a message are ignored."""
    c = Conversation.from_list([{"role": "user", "content": "hi", "ts": 1}])
    assert c.to_list() == [{"role": "user", "content": "hi"}]


@pytest.mark.parametrize("items,error", [
    ([{"role": "user"}], InvalidFormat),
    (["hello"], InvalidFormat),
    ([{"role": 1, "content": "x"}], InvalidFormat),
    ([{"role": "user", "content": None}], InvalidFormat),
    ([{"role": "tool", "content": "x"}], InvalidRole),
    ([{"role": "user", "content": "a\x00"}], NulByteInString),
])
def test_from_list_errors(items, error):
    """Malformed items raise the matching format error."""
    with pytest.raises(error):
        Conversation.from_list(items)
