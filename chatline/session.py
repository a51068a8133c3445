"""
Chat session — one conversation, one owner, one engine.

A session drives turns: append the user message, trim to the context budget,
render the prompt, run the engine and record the answer. A turn is committed
to the conversation only once generation has finished. If the caller stops
consuming a stream, the task is cancelled, or the engine fails, the
conversation is left exactly as it was before the turn started.
"""

from __future__ import annotations

import logging
import os

from chatline import storage
from chatline.conversation import Conversation, Message, Role
from chatline.engines.base import BaseEngine, Generation, GenerationParams
from chatline.template import render_prompt
from chatline.trimmer import conversation_tokens, trim_to_budget

logger = logging.getLogger(__name__)


class ChatSession:
    """Owns a Conversation and runs turns against an engine."""

    def __init__(
        self,
        engine: BaseEngine,
        conversation: Conversation | None = None,
        system_prompt: str | None = None,
        context_budget: int = 0,
    ):
        self.engine = engine
        self.conversation = conversation if conversation is not None else Conversation()
        self.context_budget = context_budget
        if system_prompt:
            self.conversation.set_or_prepend_system_prompt(system_prompt)

    # -- conversation management -------------------------------------------

    def set_system_prompt(self, text: str) -> None:
        self.conversation.set_or_prepend_system_prompt(text)

    def clear(self) -> None:
        self.conversation.clear_keep_system()

    def fit_context(self, conversation: Conversation | None = None, keep_last: int = 0) -> int:
        """Trim the (given or own) conversation to the context budget."""
        target = conversation if conversation is not None else self.conversation
        return trim_to_budget(target, self.context_budget, conversation_tokens, keep_last=keep_last)

    def save(self, path: str | os.PathLike) -> None:
        storage.save(path, self.conversation)

    def load(self, path: str | os.PathLike) -> None:
        """Replace the conversation with a saved one. On failure nothing changes."""
        self.conversation = storage.load(path)

    # -- turns --------------------------------------------------------------

    def _prepare(self, user_text: str) -> tuple[Conversation, str]:
        """Build the pending conversation for a turn without touching our own."""
        pending = self.conversation.copy()
        pending.append(Message(Role.USER, user_text))
        self.fit_context(pending, keep_last=1)
        return pending, render_prompt(pending)

    def _commit(self, pending: Conversation, answer: str) -> None:
        pending.append(Message(Role.ASSISTANT, answer))
        self.conversation = pending

    async def reply(self, user_text: str, params: GenerationParams | None = None) -> Generation:
        """Run a full turn and return the engine's generation."""
        pending, prompt = self._prepare(user_text)
        generation = await self.engine.generate(prompt, params)
        self._commit(pending, generation.text)
        logger.debug(
            "Turn complete: %d prompt / %d completion tokens, finish=%s",
            generation.prompt_tokens, generation.completion_tokens, generation.finish_reason,
        )
        return generation

    async def stream_reply(self, user_text: str, params: GenerationParams | None = None):
        """
        Run a turn as a stream of Fragment objects.

        The turn is committed when the engine reports its finish reason.
        Closing the generator early, or cancelling the task consuming it,
        discards the turn and closes the engine stream.
        """
        pending, prompt = self._prepare(user_text)
        pieces: list[str] = []
        stream = self.engine.generate_stream(prompt, params)
        try:
            async for fragment in stream:
                if fragment.text:
                    pieces.append(fragment.text)
                if fragment.finish_reason:
                    self._commit(pending, "".join(pieces))
                yield fragment
        finally:
            await stream.aclose()
