"""
OpenAI-compatible completion engine.

Sends the serialized prompt to any server that implements the legacy
`/v1/completions` endpoint:
- llama.cpp server
- vLLM
- Text Generation WebUI (TGI)
- LocalAI
- Ollama
"""

from __future__ import annotations

import json
import logging
import time

import httpx

from chatline.engines.base import BaseEngine, EngineError, Fragment, Generation, GenerationParams
from chatline.template import IM_END
from chatline.trimmer import estimate_tokens

logger = logging.getLogger(__name__)


class OpenAICompatEngine(BaseEngine):
    """
    Engine backed by a remote OpenAI-compatible completions endpoint.
    """

    def __init__(
        self,
        name: str,
        url: str,
        model: str = "",
        timeout: int = 120,
        api_key: str = "",
    ):
        super().__init__(name, model, timeout)
        self.url = url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(self, prompt: str, params: GenerationParams | None, stream: bool) -> dict:
        body = {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "stop": [IM_END],
        }
        if params:
            body.update(params.as_dict())
        return body

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> Generation:
        """Request a non-streaming completion."""
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1/completions",
                    json=self._body(prompt, params, stream=False),
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Engine '%s' timed out after %.0fms", self.name, latency)
            raise EngineError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Engine '%s' failed: %s", self.name, e)
            raise EngineError(str(e)) from e

        latency = (time.monotonic() - t0) * 1000
        if resp.status_code >= 400:
            raise EngineError(f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            choice = data["choices"][0]
            text = choice.get("text") or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EngineError(f"Unexpected response from engine '{self.name}'") from e

        usage = data.get("usage") or {}
        return Generation(
            text=text,
            finish_reason=choice.get("finish_reason") or "stop",
            prompt_tokens=usage.get("prompt_tokens", estimate_tokens(prompt)),
            completion_tokens=usage.get("completion_tokens", estimate_tokens(text)),
            latency_ms=latency,
        )

    async def generate_stream(self, prompt: str, params: GenerationParams | None = None):
        """Request a streaming completion, yielding fragments as they arrive."""
        finish_reason = None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/completions",
                    json=self._body(prompt, params, stream=True),
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise EngineError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                    async for line in resp.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data_str = line[6:].strip()
                        if data_str == "[DONE]":
                            break
                        try:
                            choice = json.loads(data_str)["choices"][0]
                        except (json.JSONDecodeError, KeyError, IndexError, TypeError):
                            logger.debug("Engine '%s' sent an unreadable chunk: %r", self.name, data_str[:200])
                            continue
                        text = choice.get("text") or ""
                        if text:
                            yield Fragment(text=text)
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.TimeoutException as e:
            logger.warning("Engine '%s' stream timed out", self.name)
            raise EngineError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Engine '%s' stream failed: %s", self.name, e)
            raise EngineError(str(e)) from e

        yield Fragment(finish_reason=finish_reason or "stop")

    async def health_check(self) -> bool:
        """Check the endpoint is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Health check for '%s' failed: %s", self.name, e)
            return False
