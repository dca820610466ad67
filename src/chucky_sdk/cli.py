"""Chucky command line.

Usage:
    chucky prompt "What is 2 + 2?"              # Print the final answer
    chucky prompt "Tell me a story" --stream    # Print text as it arrives
    chucky prompt "Hi" --json                   # Print the raw result message
    chucky prompt "Hi" --model claude-sonnet-4-5 --max-turns 3

The token and endpoint default to CHUCKY_TOKEN and CHUCKY_URL.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from .client import ChuckyClient
from .config import ClientConfig
from .errors import ChuckyError
from .protocol.envelopes import Envelope, result_text
from .session import ErrorEvent, ResultEvent, SessionOptions, TextDelta, ToolUseEvent


@click.group()
@click.version_option(package_name="chucky-sdk")
def main() -> None:
    """Talk to a sandboxed agent from the command line."""


@main.command()
@click.argument("message")
@click.option("--url", envvar="CHUCKY_URL", default=None, help="Service WebSocket URL")
@click.option("--token", envvar="CHUCKY_TOKEN", default=None, help="Bearer token")
@click.option("--model", default=None, help="Model to use")
@click.option("--system-prompt", default=None, help="System prompt for the session")
@click.option("--max-turns", type=int, default=None, help="Maximum agent turns")
@click.option("--stream/--no-stream", default=False, help="Print text as it arrives")
@click.option("--json", "output_json", is_flag=True, help="Output the result message as JSON")
@click.option("--debug", is_flag=True, help="Log protocol traffic")
def prompt(
    message: str,
    url: str | None,
    token: str | None,
    model: str | None,
    system_prompt: str | None,
    max_turns: int | None,
    stream: bool,
    output_json: bool,
    debug: bool,
) -> None:
    """Send MESSAGE in a one-shot session and print the answer.

    Examples:

        # Plain answer
        chucky prompt "Summarize the README"

        # Streamed output with a system prompt
        chucky prompt "Write a haiku" --stream --system-prompt "You are a poet"
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ClientConfig.from_env(base_url=url, token=token, debug=debug or None)
    except (TypeError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    options = SessionOptions(model=model, system_prompt=system_prompt, max_turns=max_turns)

    try:
        if stream:
            result = asyncio.run(_stream(config, message, options))
        else:
            result = asyncio.run(ChuckyClient(config).prompt(message, options))
    except ChuckyError as e:
        click.echo(f"Error: {e.message}" + (f" ({e.code})" if e.code else ""), err=True)
        sys.exit(1)

    if result is None:
        return
    if output_json:
        click.echo(json.dumps(result.to_wire(), indent=2, ensure_ascii=False, default=str))
    elif not stream:
        click.echo(result_text(result) or "")

    if result.is_error_result():
        sys.exit(1)


async def _stream(config: ClientConfig, message: str, options: SessionOptions) -> Envelope | None:
    """Stream one turn to stdout; returns the result message."""
    async with ChuckyClient(config) as client:
        session = await client.create_session(options)
        async for event in session.stream(message):
            if isinstance(event, TextDelta):
                click.echo(event.text, nl=False)
            elif isinstance(event, ToolUseEvent):
                click.echo(f"\n[tool] {event.name}", err=True)
            elif isinstance(event, ErrorEvent):
                raise event.error
            elif isinstance(event, ResultEvent):
                click.echo()
                return event.result
    return None


if __name__ == "__main__":
    main()
