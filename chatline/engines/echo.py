"""
Echo engine — answers with the latest user turn.

No model, no network. Useful for wiring checks, demos and tests: the reply is
deterministic and streams word by word, so every code path that consumes an
engine can be exercised offline.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time

from chatline.engines.base import BaseEngine, Fragment, Generation, GenerationParams
from chatline.template import IM_END, IM_START
from chatline.trimmer import estimate_tokens

logger = logging.getLogger(__name__)

_USER_TURN = re.compile(re.escape(f"{IM_START}user\n") + r"(.*?)" + re.escape(IM_END), re.DOTALL)


def last_user_turn(prompt: str) -> str:
    """Content of the last user block in a ChatML prompt, or "" if none."""
    turns = _USER_TURN.findall(prompt)
    return turns[-1] if turns else ""


def split_words(text: str) -> list[str]:
    """Split into word pieces whose concatenation is exactly text."""
    return [piece for piece in re.split(r"(?<=\s)(?=\S)", text) if piece]


class EchoEngine(BaseEngine):
    """Engine that repeats the last user message back."""

    def __init__(self, name: str = "echo", model: str = "echo", timeout: int = 120, delay: float = 0.0):
        super().__init__(name, model, timeout)
        self.delay = delay

    def _plan(self, prompt: str, params: GenerationParams | None) -> tuple[list[str], str]:
        words = split_words(last_user_turn(prompt))
        limit = params.max_tokens if params else None
        if limit is not None and len(words) > limit:
            return words[:limit], "length"
        return words, "stop"

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> Generation:
        t0 = time.monotonic()
        words, finish_reason = self._plan(prompt, params)
        text = "".join(words)
        return Generation(
            text=text,
            finish_reason=finish_reason,
            prompt_tokens=estimate_tokens(prompt),
            completion_tokens=len(words),
            latency_ms=(time.monotonic() - t0) * 1000,
        )

    async def generate_stream(self, prompt: str, params: GenerationParams | None = None):
        words, finish_reason = self._plan(prompt, params)
        for word in words:
            await asyncio.sleep(self.delay)
            yield Fragment(text=word)
        yield Fragment(finish_reason=finish_reason)
