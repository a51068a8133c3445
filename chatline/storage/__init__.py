"""
Durable storage for conversations.

Usage:
    from chatline.storage import load, save
    save("chat.json", conversation)
    conversation = load("chat.json")
"""

from .chat_file import MAX_FILE_BYTES, load, save

__all__ = ["MAX_FILE_BYTES", "load", "save"]
