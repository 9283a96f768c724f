#!/usr/bin/env python3

"""
Interactive chat over a persisted koppel session.

Reads one line per turn from stdin, sends it through the selected provider and
prints the reply. With ``--session`` the conversation is loaded from and saved
to a JSON file after every turn.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from .chat import Session
from .config import ProviderSettings, create_provider, default_registry
from .errors import KoppelError
from .log import configure_logging, get_logger
from .parts import Message, TextPart

logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="koppel", description="Chat with an LLM through koppel")
    parser.add_argument("--provider", type=str, default="gemini", choices=default_registry().available_providers(), help="Provider backend to use")
    parser.add_argument("--model", type=str, required=True, help="Model name for the selected provider")
    parser.add_argument("--session", type=Path, default=None, help="Session file to resume and save after each turn")
    parser.add_argument("--system", type=str, default=None, help="System instruction added to a new session")
    parser.add_argument("--stream", action="store_true", help="Print the reply as it streams in")
    parser.add_argument("--log_level", type=str, default=None, help="Log level (default: env KOPPEL_LOG_LEVEL or warning)")
    return parser


async def run_turn(session: Session, text: str, stream: bool) -> None:
    if not stream:
        response = await session.send(TextPart(text))
        print(response.text())
        return

    chat_stream = await session.send_stream(TextPart(text))
    async with chat_stream:
        async for delta in chat_stream:
            print(delta.text(), end="", flush=True)
    print()


async def chat_loop(session: Session, stream: bool, session_path: Optional[Path]) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        text = line.strip()
        if not text:
            continue
        try:
            await run_turn(session, text, stream)
        except KoppelError as exc:
            logger.error("turn failed: %s", exc)
            print(f"error: {exc}", file=sys.stderr)
        if session_path is not None:
            session.save(session_path)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = ProviderSettings.from_env()
    configure_logging(args.log_level or settings.log_level, json_format=settings.log_json)

    if args.session is not None and args.session.exists():
        session = Session.load(args.session)
        session.model = args.model
        logger.info("resumed session with %d messages", len(session.history))
    else:
        session = Session(args.model)
        if args.system:
            session.history.append(Message(role="system", parts=[TextPart(args.system)]))

    session.set_provider(create_provider(args.provider, settings))

    try:
        asyncio.run(chat_loop(session, args.stream, args.session))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
