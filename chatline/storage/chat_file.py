"""
Chat file persistence.

Format: a JSON array in conversation order, pretty-printed with 2-space
indentation on write. Any valid JSON whitespace is accepted on read.

    [
      {
        "role": "system",
        "content": "You are terse."
      },
      {
        "role": "user",
        "content": "hi"
      }
    ]

Writes go to a temp file in the target directory which is then renamed over
the target, so readers never observe a half-written file and a crash
mid-write leaves the previous file intact. Concurrent writers to the same
path are not coordinated: the last rename wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from chatline.conversation import Conversation
from chatline.errors import InvalidFormat
from chatline.protocol import write_json

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 64 * 1024 * 1024


def load(path: str | os.PathLike) -> Conversation:
    """
    Read a chat file into a new Conversation.

    Raises InvalidFormat for oversized, non-UTF-8 or malformed files,
    InvalidRole for unknown role tokens and NulByteInString for content that
    contains a NUL. OSError from the file system propagates as is.
    """
    path = Path(path)
    with open(path, "rb") as f:
        data = f.read(MAX_FILE_BYTES + 1)
    if len(data) > MAX_FILE_BYTES:
        raise InvalidFormat(f"Chat file exceeds {MAX_FILE_BYTES} bytes: {path}")

    try:
        items = json.loads(data.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise InvalidFormat(f"Chat file is not valid UTF-8: {path}") from e
    except json.JSONDecodeError as e:
        raise InvalidFormat(f"Chat file is not valid JSON: {path}: {e}") from e

    if not isinstance(items, list):
        raise InvalidFormat(f"Chat file must hold a JSON array: {path}")

    conversation = Conversation.from_list(items)
    logger.debug("Loaded %d message(s) from %s", len(conversation), path)
    return conversation


def save(path: str | os.PathLike, conversation: Conversation) -> None:
    """
    Atomically write the conversation to path.

    On failure the temp file is removed, the previous file is untouched and
    the error propagates to the caller, who still holds the conversation.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            write_json(f, conversation.to_list(), pretty=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600; keep the mode of the file being replaced
        mode = path.stat().st_mode & 0o777 if path.exists() else 0o644
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError as cleanup_error:
            logger.warning("Could not remove temp file %s: %s", tmp_name, cleanup_error)
        raise

    logger.info("Saved %d message(s) to %s", len(conversation), path)
