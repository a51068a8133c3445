"""chatline — conversation state and an OpenAI-compatible chat completion layer."""

__version__ = "0.3.0"
