#!/usr/bin/env python3
"""
chatline CLI.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the OpenAI-compatible server
    chat            repl            Interactive chat in the terminal
    show            cat             Print a saved chat file

Inside `chat`, lines starting with / are commands (see /help).
"""

import argparse
import asyncio
import sys

from chatline import __version__
from chatline.errors import FormatError

# ANSI colors
C_RESET = "\033[0m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_SYSTEM = "\033[90m"     # gray
C_ERROR = "\033[91m"      # red

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "system": C_SYSTEM,
}

HELP_TEXT = """\
  /clear, /reset      forget the conversation, keep the system prompt
  /system <text>      set or replace the system prompt
  /save [path]        save the conversation (default: --save path)
  /load <path>        replace the conversation with a saved one
  /history            show the conversation so far
  /help               this text
  /quit, /exit        leave (autosaves when --save is set)"""


def _color(code: str) -> str:
    return code if sys.stdout.isatty() else ""


def _error(message: str):
    print(f"  {_color(C_ERROR)}✗ {message}{_color(C_RESET)}")


def print_conversation(conversation):
    for message in conversation:
        role = message.role.value
        print(f"  {_color(ROLE_COLORS[role])}{role}{_color(C_RESET)}: {message.content}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatline server."""
    import uvicorn
    from chatline.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatline {__version__} on {host}:{port}")
    print(f"  Engine: {cfg['engine']['provider']} {cfg['engine']['model']}".rstrip())
    print()

    uvicorn.run(
        "chatline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_show(args):
    """Print a saved chat file."""
    from chatline import storage

    try:
        conversation = storage.load(args.path)
    except (FormatError, OSError) as e:
        _error(f"Cannot read {args.path}: {e}")
        sys.exit(1)
    print_conversation(conversation)


def run_command(session, line: str, save_path: str | None) -> bool:
    """
    Execute one /command against the session.
    Returns False when the REPL should stop.
    """
    name, _, arg = line[1:].partition(" ")
    arg = arg.strip()

    if name in ("quit", "exit"):
        return False
    if name in ("clear", "reset"):
        session.clear()
        print("  [conversation cleared]")
    elif name == "system":
        if not arg:
            _error("usage: /system <text>")
        else:
            try:
                session.set_system_prompt(arg)
                print("  [system prompt set]")
            except FormatError as e:
                _error(str(e))
    elif name == "save":
        path = arg or save_path
        if not path:
            _error("usage: /save <path>")
        else:
            try:
                session.save(path)
                print(f"  [saved {len(session.conversation)} message(s) to {path}]")
            except OSError as e:
                _error(f"Save failed, conversation kept in memory: {e}")
    elif name == "load":
        if not arg:
            _error("usage: /load <path>")
        else:
            try:
                session.load(arg)
                print(f"  [loaded {len(session.conversation)} message(s) from {arg}]")
            except (FormatError, OSError) as e:
                _error(f"Load failed, keeping current conversation: {e}")
    elif name == "history":
        print_conversation(session.conversation)
    elif name == "help":
        print(HELP_TEXT)
    else:
        _error(f"Unknown command: /{name} (try /help)")
    return True


async def _stream_turn(session, text: str):
    async for fragment in session.stream_reply(text):
        if fragment.text:
            print(fragment.text, end="", flush=True)
        if fragment.finish_reason == "length":
            print(f" {_color(C_DIM)}[truncated]{_color(C_RESET)}", end="")
    print()


def cmd_chat(args):
    """Interactive chat REPL."""
    from chatline import storage
    from chatline.config import get_config, setup_logging
    from chatline.engines import EngineError, make_engine
    from chatline.session import ChatSession

    cfg = get_config()
    setup_logging({"logging": {
        "level": "DEBUG" if args.verbose else "WARNING",
        "file": cfg["logging"].get("file"),
    }})

    save_path = args.save or cfg["chat"].get("history_path") or None
    load_path = args.load or save_path

    conversation = None
    if load_path:
        try:
            conversation = storage.load(load_path)
            print(f"  [loaded {len(conversation)} message(s) from {load_path}]")
        except FileNotFoundError:
            if args.load:
                _error(f"No such chat file: {load_path}, starting fresh")
        except (FormatError, OSError) as e:
            _error(f"Cannot load {load_path}: {e}, starting fresh")

    budget = args.budget if args.budget is not None else cfg["context"]["max_tokens"]
    session = ChatSession(
        make_engine(cfg["engine"]),
        conversation=conversation,
        system_prompt=args.system or cfg["chat"].get("system_prompt") or None,
        context_budget=budget,
    )

    print(f"  chatline {__version__}. /help for commands, Ctrl-D to leave.\n")
    try:
        while True:
            try:
                line = input(f"{_color(C_USER)}> {_color(C_RESET)}").strip()
            except EOFError:
                print()
                break
            if not line:
                continue
            if line.startswith("/"):
                if not run_command(session, line, save_path):
                    break
                continue
            try:
                asyncio.run(_stream_turn(session, line))
            except KeyboardInterrupt:
                print("\n  [generation interrupted, turn discarded]")
            except EngineError as e:
                _error(f"Engine error: {e}")
            except FormatError as e:
                _error(str(e))
    except KeyboardInterrupt:
        print()

    if save_path:
        try:
            session.save(save_path)
            print(f"  [saved to {save_path}]")
        except OSError as e:
            _error(f"Autosave failed: {e}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatline",
        description="chatline — conversational front-end with an OpenAI-compatible API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatline {__version__}",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the OpenAI-compatible server", cmd_serve, setup_serve)

    def setup_chat(p):
        p.add_argument("--load", "-l", default=None, help="Chat file to start from")
        p.add_argument("--save", "-s", default=None, help="Chat file to save to on exit")
        p.add_argument("--system", default=None, help="System prompt")
        p.add_argument("--budget", "-b", type=int, default=None,
                       help="Context budget in estimated tokens (0 = unlimited)")
        p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    _add_command(sub, ["chat", "repl"],
                 "Interactive chat in the terminal", cmd_chat, setup_chat)

    def setup_show(p):
        p.add_argument("path", help="Chat file")

    _add_command(sub, ["show", "cat"], "Print a saved chat file", cmd_show, setup_show)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    if args.config:
        import os
        from chatline.config import load_config
        # uvicorn --reload workers re-read the config in a fresh process
        os.environ["CHATLINE_CONFIG"] = args.config
        load_config(args.config)

    args.func(args)


if __name__ == "__main__":
    main()
