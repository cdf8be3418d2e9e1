"""
branchchat - Main Entry Point.

Two sub-commands:

- ``serve`` runs the REST API (:mod:`branchchat.conversation.server`) under
  uvicorn.
- ``ask`` sends one message to the configured provider and streams the
  answer (and any reasoning text) to the terminal.

Configuration comes from :mod:`branchchat.config`; command-line options
override it.
"""

import argparse
import asyncio
import logging
import sys

from branchchat.config import Settings, get_settings
from branchchat.conversation.events import (
    PartialText,
    StreamEvent,
    TextReplaced,
    ThinkingComplete,
    ThinkingPartial,
    ThinkingStarted,
)
from branchchat.conversation.loop import TurnDone
from branchchat.conversation.session import ConversationManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_rest_server(settings: Settings) -> None:
    """Run the REST API server until interrupted."""
    from branchchat.conversation.server import create_app
    import uvicorn

    manager = ConversationManager(settings)
    app = create_app(manager)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    logger.info(
        "Starting REST API server on %s:%d (provider=%s, model=%s)",
        settings.host,
        settings.port,
        settings.provider,
        settings.model,
    )
    try:
        await server.serve()
    finally:
        await manager.aclose()
        logger.info("Server shutdown complete")


def print_event(event: StreamEvent) -> None:
    """Write streamed text to stdout and reasoning to stderr."""
    if isinstance(event, ThinkingStarted):
        sys.stderr.write("[thinking]\n")
    elif isinstance(event, ThinkingPartial):
        sys.stderr.write(event.text)
    elif isinstance(event, ThinkingComplete):
        sys.stderr.write(f"\n[thought for {event.elapsed_seconds:.1f}s]\n")
    elif isinstance(event, PartialText):
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif isinstance(event, TextReplaced):
        # A terminal cannot take back printed text; start the new answer below.
        sys.stdout.write(f"\n\n{event.text}")
        sys.stdout.flush()


async def ask(settings: Settings, text: str) -> int:
    """Answer one message; return the process exit code."""
    manager = ConversationManager(settings)
    try:
        session = manager.create()
        result = await session.send_message(text, on_event=print_event)
    finally:
        await manager.aclose()
    if isinstance(result.outcome, TurnDone):
        sys.stdout.write("\n")
        return 0
    sys.stderr.write(f"error: {result.outcome.error}\n")
    return 1


def cli() -> None:
    """Entry point for the branchchat console script."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Branching LLM conversations with streaming and tool calling"
    )
    parser.add_argument("--provider", default=settings.provider, help="Provider name")
    parser.add_argument("--model", default=settings.model, help="Model identifier")
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help=f"Logging level (default: {settings.log_level})",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve_parser = subcommands.add_parser("serve", help="Run the REST API server")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)

    ask_parser = subcommands.add_parser("ask", help="Send one message and stream the answer")
    ask_parser.add_argument("text", help="Message text")
    ask_parser.add_argument(
        "--thinking",
        default=None,
        help="Reasoning effort level (e.g. low, high) or a token budget",
    )
    args = parser.parse_args()

    settings.provider = args.provider
    settings.model = args.model
    settings.log_level = args.log_level
    configure_logging(settings.log_level)

    if args.command == "serve":
        settings.host = args.host
        settings.port = args.port
        asyncio.run(run_rest_server(settings))
        return

    if args.thinking:
        if args.thinking.isdigit():
            settings.thinking_tokens = int(args.thinking)
        else:
            settings.thinking_effort = args.thinking
    sys.exit(asyncio.run(ask(settings, args.text)))


if __name__ == "__main__":
    cli()
