"""
Chat template — turn a Conversation into the serialized prompt an engine consumes.

ChatML layout, one block per message:

    <|im_start|>system
    You are terse.<|im_end|>
    <|im_start|>user
    hi<|im_end|>
    <|im_start|>assistant

The trailing open assistant block is the generation prompt.
"""

from __future__ import annotations

from chatline.conversation import Conversation, Message, role_to_string

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"


def render_message(message: Message) -> str:
    return f"{IM_START}{role_to_string(message.role)}\n{message.content}{IM_END}\n"


def render_prompt(conversation: Conversation, add_generation_prompt: bool = True) -> str:
    """Serialize the whole conversation, optionally opening an assistant turn."""
    parts = [render_message(m) for m in conversation]
    if add_generation_prompt:
        parts.append(f"{IM_START}assistant\n")
    return "".join(parts)
