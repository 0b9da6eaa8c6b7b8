"""
One-shot terminal client: sends a single prompt through the streaming
endpoint (with the stall watchdog and fallback) and prints the reply.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import httpx

from superkagi.chat.normalizer import content_to_text
from superkagi.config import Configuration
from superkagi.consumer import ChatSession, ClientSettings, NoticeBoard, ThreadStore
from superkagi.consumer.thread_store import ThreadMessage
from superkagi.main import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send one prompt to a SuperKagi server and print the reply")
    parser.add_argument("prompt", type=str, help="Text of the user message")
    parser.add_argument("--server", type=str, default=None, help="Server base URL")
    parser.add_argument("--provider", type=str, default=None, help="local, openrouter or nanogpt")
    parser.add_argument("--model", type=str, default=None, help="Model name")
    parser.add_argument("--api-key", type=str, default=None, help="Provider API key")
    parser.add_argument("--local-url", type=str, default=None, help="Base URL of a local OpenAI-compatible server")
    parser.add_argument("--system-prompt", type=str, default=None, help="System prompt")
    parser.add_argument("--deep-search", action="store_true", help="Enable web search tools")
    return parser


async def run_once(args: argparse.Namespace, config: Configuration) -> ThreadMessage | None:
    client_config = config.get_client_config()
    settings = ClientSettings.from_defaults(
        config.defaults,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        local_url=args.local_url,
        system_prompt=args.system_prompt,
        deep_search=True if args.deep_search else None,
    )
    store = ThreadStore()
    notices = NoticeBoard()

    def render(_thread_id: str, message: ThreadMessage) -> None:
        if message.role == "assistant" and message.pending:
            logger.debug("Reply so far: %d chars", len(message.content))

    store.subscribe(render)

    base_url = args.server or client_config["server_url"]
    async with httpx.AsyncClient(base_url=base_url) as http:
        session = ChatSession(store, notices, http, settings, client_config)
        reply = await session.send("cli", args.prompt)

    for notice in notices.active():
        print(f"[notice] {notice.text}", file=sys.stderr)
    return reply


def main() -> None:
    args = build_parser().parse_args()
    config = Configuration()
    configure_logging(config)

    reply = asyncio.run(run_once(args, config))
    if reply is None:
        print("[error] nothing to send: the prompt is empty", file=sys.stderr)
        sys.exit(2)
    if reply.reasoning:
        print(f"[reasoning] {reply.reasoning}", file=sys.stderr)
    print(content_to_text(reply.content))
    if reply.cost is not None:
        print(f"[cost] {reply.cost:.6f}", file=sys.stderr)
    if reply.interrupted:
        print(f"[interrupted] {reply.error}", file=sys.stderr)
    elif reply.error:
        print(f"[error] {reply.error}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
