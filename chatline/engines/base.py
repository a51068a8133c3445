"""
Base engine abstraction.
An engine turns a serialized prompt into text, either in one piece or as an
ordered stream of fragments. Everything about tokenization and sampling is
the engine's business; chatline only sees text.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass

from chatline.errors import ChatlineError

logger = logging.getLogger(__name__)


class EngineError(ChatlineError):
    """The engine could not produce a generation."""


@dataclass
class GenerationParams:
    """Sampling knobs forwarded from a chat completion request."""
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    seed: int | None = None

    @classmethod
    def from_request(cls, request) -> "GenerationParams":
        return cls(
            temperature=request.temperature,
            top_p=request.top_p,
            max_tokens=request.max_tokens,
            seed=request.seed,
        )

    def as_dict(self) -> dict:
        """Only the knobs that were actually set."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class Fragment:
    """One piece of streamed output. finish_reason is set on the last piece only."""
    text: str = ""
    finish_reason: str | None = None


@dataclass
class Generation:
    """A complete generation."""
    text: str
    finish_reason: str = "stop"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseEngine(abc.ABC):
    """
    Abstract base for text generation engines.
    Each engine knows how to generate, stream and report health.
    """

    def __init__(self, name: str, model: str = "", timeout: int = 120):
        self.name = name
        self.model = model
        self.timeout = timeout

    @abc.abstractmethod
    async def generate(self, prompt: str, params: GenerationParams | None = None) -> Generation:
        """Produce the full completion for prompt."""
        ...

    @abc.abstractmethod
    def generate_stream(self, prompt: str, params: GenerationParams | None = None):
        """
        Produce the completion incrementally.
        Returns an async iterator of Fragment, in generation order.
        """
        ...

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        """Release anything the engine holds open."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} model={self.model!r}>"
