"""CLI interface for chatrelay."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click

from . import __version__
from .config import API_URL, DATA_DIR, HOST, LOG_FORMAT, PORT, SQLITE_PATH, load_gateway_settings


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


@click.group()
@click.version_option(version=__version__, prog_name="chatrelay")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """chatrelay: chat with an AI model, with every conversation saved.

    Run the server with `chatrelay serve`, then talk to it from a browser
    front end or with `chatrelay chat`.
    """
    _setup_logging(verbose)


@cli.command()
@click.option("--host", default=HOST, show_default=True)
@click.option("--port", default=PORT, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Restart on code changes (development)")
def serve(host: str, port: int, reload: bool):
    """Start the HTTP server."""
    import uvicorn

    logging.getLogger("chatrelay").setLevel(logging.INFO)
    click.echo(f"Database: {SQLITE_PATH}", err=True)
    uvicorn.run("chatrelay.server:create_app", factory=True, host=host, port=port, reload=reload)


@cli.command("chats")
@click.option("--url", default=API_URL, show_default=True, help="Server base URL")
def list_chats(url: str):
    """List chats on the server, most recently updated first."""
    import httpx

    from .client import ChatAPIClient
    from .errors import APIError

    async def run():
        async with ChatAPIClient(url) as client:
            return await client.list_chats()

    try:
        chats = asyncio.run(run())
    except APIError as e:
        raise click.ClickException(e.detail)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Cannot reach {url}: {e}")

    if not chats:
        click.echo("No chats yet.")
        return

    for c in chats:
        click.echo(f"{click.style(c.title, bold=True)} ({c.message_count} msgs)")
        click.echo(f"   ID: {c.id}")


@cli.command()
@click.argument("chat_id", required=False)
@click.option("--url", default=API_URL, show_default=True, help="Server base URL")
def chat(chat_id: str | None, url: str):
    """Chat interactively, streaming replies into the terminal.

    Starts a new chat unless CHAT_ID is given. Ctrl-C stops a reply in
    progress; /retry resends the last failed message; /quit exits.
    """
    import httpx

    try:
        asyncio.run(_chat_loop(url, chat_id))
    except httpx.HTTPError as e:
        raise click.ClickException(f"Cannot reach {url}: {e}")


async def _chat_loop(url: str, chat_id: str | None):
    from .client import ChatAPIClient
    from .state import ChatState

    loop = asyncio.get_running_loop()

    async with ChatAPIClient(url) as client:
        state = ChatState(client)
        chat = await state.select_chat(chat_id) if chat_id else await state.create_chat()
        if chat is None:
            raise click.ClickException(state.error or "Could not open chat")

        click.echo(click.style(f"{chat.title}", bold=True) + f"  [{chat.id}]")
        for message in chat.messages:
            click.echo(f"{message.role}> {message.content}")

        while True:
            try:
                text = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
            except (EOFError, click.Abort):
                click.echo()
                return

            text = text.strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                return

            try:
                loop.add_signal_handler(signal.SIGINT, state.stop_streaming)
            except (NotImplementedError, RuntimeError):
                pass  # Not available on this platform; Ctrl-C then exits

            click.echo("ai> ", nl=False)
            try:
                if text == "/retry":
                    outcome = await state.retry_last_message()
                    if outcome is None:
                        click.echo("(nothing to retry)")
                        continue
                else:
                    outcome = await state.send_message(
                        text, on_content=lambda chunk: click.echo(chunk, nl=False)
                    )
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass

            click.echo()
            if outcome == "cancelled":
                click.echo(click.style("(stopped)", dim=True))
            elif outcome == "error":
                click.echo(click.style(f"Error: {state.error}", fg="red"), err=True)
                click.echo(click.style("Type /retry to send it again.", dim=True), err=True)


@cli.command()
@click.option("--prompt", default="Reply with the single word: pong", show_default=True)
def check(prompt: str):
    """Send one prompt to the model backend and print the reply."""
    from .errors import GatewayError
    from .gateway import OpenAIGateway

    settings = load_gateway_settings()
    gateway = OpenAIGateway(settings)
    click.echo(f"Asking {settings.model} at {settings.base_url} ...", err=True)
    try:
        text = asyncio.run(gateway.complete([{"role": "user", "content": prompt}]))
    except GatewayError as e:
        raise click.ClickException(f"{e} [{e.category.value}]")
    click.echo(text)


@cli.command()
def config():
    """Print the effective configuration."""
    settings = load_gateway_settings()
    key = settings.api_key
    masked = f"{key[:3]}...{key[-4:]}" if len(key) > 10 else "***"

    click.echo()
    click.echo(click.style("Server", bold=True))
    click.echo(f"  Listen:      {HOST}:{PORT}")
    click.echo(f"  API URL:     {API_URL}")
    click.echo(f"  Data dir:    {DATA_DIR}")
    click.echo(f"  Database:    {SQLITE_PATH}")
    click.echo()
    click.echo(click.style("Model backend", bold=True))
    click.echo(f"  Base URL:    {settings.base_url}")
    click.echo(f"  Model:       {settings.model}")
    click.echo(f"  API key:     {masked}")
    click.echo(f"  Timeout:     {settings.timeout:g}s")
    click.echo(f"  Retries:     {settings.max_retries}")
    click.echo()
