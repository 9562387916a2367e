from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from cubesync.config.realtime import RealtimeClientConfig, load_realtime_config
from cubesync.logging_config import init_logging, reset_session_context, set_session_context
from cubesync.realtime.client import RealtimeClient
from cubesync.realtime.credentials import CredentialStore
from cubesync.realtime.errors import AuthError, TransportError
from cubesync.realtime.events import EventType, RealtimeEvent

app = typer.Typer(add_completion=False, help="cubesync realtime transport utilities.")
token_app = typer.Typer(add_completion=False, help="Manage the stored session token.")
app.add_typer(token_app, name="token")
logger = logging.getLogger(__name__)


def _effective_config(
    config: Optional[Path],
    *,
    ws_url: Optional[str] = None,
    poll_url: Optional[str] = None,
    no_fallback: bool = False,
    debug: bool = False,
) -> RealtimeClientConfig:
    cfg = load_realtime_config(config)
    persistent: dict = {}
    polling: dict = {}
    if ws_url:
        persistent["server_url"] = ws_url
    if poll_url:
        polling["server_url"] = poll_url
    if debug:
        persistent["debug"] = polling["debug"] = True
    return cfg.model_copy(
        update={
            "persistent": cfg.persistent.model_copy(update=persistent),
            "polling": cfg.polling.model_copy(update=polling),
            "enable_fallback": cfg.enable_fallback and not no_fallback,
        }
    )


def _print_message(event: RealtimeEvent) -> None:
    print(json.dumps(event.data.to_dict(), ensure_ascii=False), flush=True)


def _log_state(event: RealtimeEvent) -> None:
    data = event.data
    logger.info(
        "Connection %s -> %s", data.previous_state.value, data.current_state.value
    )


async def _listen(cfg: RealtimeClientConfig, session_code: str, name: str) -> None:
    client = RealtimeClient(cfg, credentials=CredentialStore())
    client.on(EventType.MESSAGE, _print_message)
    client.on(EventType.STATE_CHANGED, _log_state)
    token = None
    try:
        await client.connect()
        await client.join_session(session_code, name)
        if client.session is not None:
            token = set_session_context(client.session.session_id)
        transport = client.active_transport.value if client.active_transport else "none"
        logger.info("Joined %s as %s over %s", session_code, name, transport)
        await asyncio.Event().wait()
    finally:
        if token is not None:
            reset_session_context(token)
        await client.dispose()


@app.command()
def listen(
    session_code: str,
    name: str,
    ws_url: Optional[str] = typer.Option(None, "--ws-url", help="WebSocket endpoint."),
    poll_url: Optional[str] = typer.Option(None, "--poll-url", help="Polling base URL."),
    no_fallback: bool = typer.Option(False, "--no-fallback", help="Never fall back to polling."),
    config: Optional[Path] = typer.Option(None, "--config", help="Config JSON file."),
    debug: bool = typer.Option(False, "--debug", help="Trace channel traffic."),
) -> None:
    """Join a session and print every inbound message as a JSON line."""
    init_logging(level="DEBUG" if debug else "INFO")
    cfg = _effective_config(
        config, ws_url=ws_url, poll_url=poll_url, no_fallback=no_fallback, debug=debug
    )
    try:
        asyncio.run(_listen(cfg, session_code, name))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except (TransportError, AuthError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)


@app.command("config-show")
def config_show(
    config: Optional[Path] = typer.Option(None, "--config", help="Config JSON file."),
) -> None:
    """Print the effective realtime configuration."""
    cfg = load_realtime_config(config)
    print(json.dumps(cfg.model_dump(mode="json"), indent=2))


@token_app.command("set")
def token_set(value: str) -> None:
    """Store a session token for later connections."""
    try:
        CredentialStore().set_token(value)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(2)
    print("token stored")


@token_app.command("clear")
def token_clear() -> None:
    """Forget the stored session token."""
    CredentialStore().clear_token()
    print("token cleared")


@token_app.command("show")
def token_show() -> None:
    """Print the stored session token, if any."""
    token = CredentialStore().get_token()
    print(token if token else "no token stored")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
