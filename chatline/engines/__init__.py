"""
Engine factory.

Usage:
    from chatline.engines import make_engine
    engine = make_engine(cfg["engine"])

Adding a new engine:
    1. Create chatline/engines/<name>.py implementing BaseEngine.
    2. Add an entry to _REGISTRY below.
    3. Set  engine.provider: <name>  in config.yaml.
"""

from __future__ import annotations

from .base import BaseEngine, EngineError, Fragment, Generation, GenerationParams
from .echo import EchoEngine
from .openai_compat import OpenAICompatEngine

_REGISTRY: dict[str, type[BaseEngine]] = {
    "echo": EchoEngine,
    "openai_compat": OpenAICompatEngine,
}


def make_engine(engine_cfg: dict) -> BaseEngine:
    """
    Instantiate an engine from the `engine:` config block.

    Raises:
        ValueError: If the provider is not registered.
    """
    provider = engine_cfg.get("provider", "echo")
    cls = _REGISTRY.get(provider)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(f"Unknown engine provider: '{provider}'. Available: {available}")

    kwargs = {
        "name": engine_cfg.get("name") or provider,
        "model": engine_cfg.get("model") or provider,
        "timeout": engine_cfg.get("timeout", 120),
    }
    if cls is OpenAICompatEngine:
        if not engine_cfg.get("url"):
            raise ValueError("engine.url is required for the openai_compat provider")
        kwargs["url"] = engine_cfg["url"]
        kwargs["api_key"] = engine_cfg.get("api_key", "")
    return cls(**kwargs)


__all__ = [
    "BaseEngine",
    "EchoEngine",
    "EngineError",
    "Fragment",
    "Generation",
    "GenerationParams",
    "OpenAICompatEngine",
    "make_engine",
]
